"""One-shot guest initialization that brings up Docker inside the microVM.

Every step after the network wait is tolerant of failure: an exception is
logged as a warning and the sequence moves on, so a partially working guest
is still reachable from the console.
"""

from __future__ import annotations

import enum
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from loguru import logger

from ..poll import wait_until
from ..status import status_line
from ..util import run_cmd
from . import engine as engine_mod
from .probe import (
    KernelFeatures,
    ensure_cgroups,
    is_mountpoint,
    probe_kernel_features,
)

log = logger

HOME_SUBDIRS = (
    '.config',
    '.cache',
    '.local/bin',
    'go/bin',
    'go/pkg',
    'go/src',
    '.npm-global',
    '.docker',
)


class NetworkState(enum.Enum):
    PENDING = 'network_pending'
    READY = 'network_ready'


class EngineState(enum.Enum):
    ABSENT = 'engine_absent'
    STARTING = 'engine_starting'
    READY = 'engine_ready'
    FAILED = 'engine_failed'


@dataclass
class GuestSettings:
    interface: str = 'eth0'
    attempts: int = 30
    interval: float = 1.0
    user: str = 'sandbox'
    uid: int = 1000
    gid: int = 1000
    workspace: Path = Path('/workspace')
    home: Path = Path('/home/sandbox')
    resolv_conf: Path = Path('/etc/resolv.conf')
    nameservers: tuple[str, ...] = ('8.8.8.8', '8.8.4.4')
    daemon_json: Path = engine_mod.DAEMON_JSON
    docker_sock: Path = engine_mod.DOCKER_SOCK
    dockerd_log: Path = engine_mod.DOCKERD_LOG


@dataclass
class BootstrapReport:
    network: NetworkState = NetworkState.PENDING
    engine: EngineState = EngineState.ABSENT
    engine_via: str = ''
    features: KernelFeatures | None = None
    diagnostic: str = ''
    failed_steps: list[str] = field(default_factory=list)


def interface_has_ipv4(interface: str) -> bool:
    res = run_cmd(
        ['ip', '-4', 'addr', 'show', 'dev', interface], check=False, capture=True
    )
    return res.code == 0 and 'inet ' in res.stdout


class GuestBootstrap:
    def __init__(
        self,
        settings: GuestSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        network_ready: Callable[[str], bool] = interface_has_ipv4,
        engine_alive: Callable[[], bool] = engine_mod.engine_alive,
        strategies: Sequence[engine_mod.Strategy] | None = None,
    ):
        self.settings = settings or GuestSettings()
        self.sleep = sleep
        self.network_ready = network_ready
        self.engine_alive = engine_alive
        self._strategies = strategies
        self.report = BootstrapReport()

    def strategies(self) -> list[engine_mod.Strategy]:
        if self._strategies is not None:
            return list(self._strategies)
        s = self.settings
        return [
            engine_mod.service_strategy(
                'containerd', ['containerd.service'], alive=self.engine_alive
            ),
            engine_mod.service_strategy(
                'docker.service',
                ['docker.socket', 'docker.service'],
                alive=self.engine_alive,
            ),
            engine_mod.DirectDaemonStrategy(
                socket_path=s.docker_sock,
                log_path=s.dockerd_log,
                attempts=s.attempts,
                interval=s.interval,
                sleep=self.sleep,
            ),
        ]

    def _step(self, name: str, func: Callable[[], object]) -> None:
        try:
            func()
        except Exception as ex:
            log.warning('Guest init step {!r} failed (continuing): {}', name, ex)
            self.report.failed_steps.append(name)

    def wait_for_network(self) -> bool:
        s = self.settings
        ok = wait_until(
            lambda: self.network_ready(s.interface),
            attempts=s.attempts,
            interval=s.interval,
            label=f'{s.interface} address',
            sleep=self.sleep,
        )
        if ok:
            self.report.network = NetworkState.READY
        else:
            log.warning(
                'Network not available after {}s',
                int(s.attempts * s.interval),
            )
        return ok

    def configure_dns(self) -> None:
        s = self.settings
        if engine_mod.service_active('systemd-resolved'):
            run_cmd(
                ['resolvectl', 'dns', s.interface, *s.nameservers],
                check=False,
                capture=True,
            )
            log.info('DNS delegated to systemd-resolved')
            return
        if s.resolv_conf.is_symlink():
            s.resolv_conf.unlink()
        lines = [f'nameserver {ns}' for ns in s.nameservers]
        s.resolv_conf.write_text('\n'.join(lines) + '\n', encoding='utf-8')
        log.info('Wrote static nameservers to {}', s.resolv_conf)

    def probe_features(self) -> None:
        self.report.features = probe_kernel_features()

    def setup_cgroups(self) -> None:
        ensure_cgroups()

    def configure_engine(self) -> None:
        features = self.report.features or KernelFeatures()
        engine_mod.write_daemon_config(
            features.overlay_fs, self.settings.daemon_json
        )

    def start_engine(self) -> None:
        self.report.engine = EngineState.STARTING
        result = engine_mod.start_engine(
            self.strategies(), alive=self.engine_alive
        )
        self.report.engine_via = result.name
        if not result.ok and result.diagnostic:
            log.warning('Engine startup: {}', result.diagnostic)

    def wait_for_engine(self) -> bool:
        s = self.settings
        log.info('Waiting for Docker daemon...')
        ok = wait_until(
            self.engine_alive,
            attempts=s.attempts,
            interval=s.interval,
            label='docker info',
            sleep=self.sleep,
        )
        if ok:
            self.report.engine = EngineState.READY
            log.info('Docker daemon ready')
            return True
        self.report.engine = EngineState.FAILED
        log.warning('Docker not ready after {} attempts', s.attempts)
        self.report.diagnostic = engine_mod.diagnostic_bundle(
            socket_path=s.docker_sock, log_path=s.dockerd_log
        )
        print(self.report.diagnostic)
        return False

    def finalize_environment(self) -> None:
        s = self.settings
        owner = f'{s.uid}:{s.gid}'
        if is_mountpoint(s.workspace):
            run_cmd(['chown', owner, str(s.workspace)], check=False, capture=True)
        for sub in HOME_SUBDIRS:
            (s.home / sub).mkdir(parents=True, exist_ok=True)
        run_cmd(['chown', '-R', owner, str(s.home)], check=False, capture=True)

    def banner(self) -> str:
        s = self.settings
        r = self.report
        version = ''
        if r.engine is EngineState.READY:
            res = run_cmd(['docker', '--version'], check=False, capture=True)
            version = res.stdout.strip()
        lines = [
            '',
            '╔════════════════════════════════════════════════════════════════════╗',
            '║  Firecracker MicroVM - Hardware-Isolated Container Environment     ║',
            '╚════════════════════════════════════════════════════════════════════╝',
            '',
            f'  User:      {s.user} (docker group)',
            f'  Workspace: {s.workspace}',
            '  '
            + status_line(r.network is NetworkState.READY, 'Network', s.interface),
            '  '
            + status_line(
                r.engine is EngineState.READY, 'Docker', version or r.engine.value
            ),
            '',
        ]
        if r.engine is EngineState.READY:
            lines.extend([
                '  Quick start:',
                '    docker run hello-world',
                f'    cd {s.workspace} && docker build .',
                '',
            ])
        else:
            lines.append('  Run `fcvm guest diagnose` for details.')
        return '\n'.join(lines)

    def run(self) -> BootstrapReport:
        log.info('Initializing guest VM...')
        self.wait_for_network()
        self._step('dns', self.configure_dns)
        self._step('kernel features', self.probe_features)
        self._step('cgroups', self.setup_cgroups)
        self._step('engine config', self.configure_engine)
        self._step('engine start', self.start_engine)
        self._step('engine readiness', self.wait_for_engine)
        self._step('environment', self.finalize_environment)
        self._step('banner', lambda: print(self.banner()))
        log.info('Guest initialization complete')
        return self.report


SYSTEMD_UNIT = """[Unit]
Description=Guest VM Initialization
After=network-online.target docker.service mount-workspace.service
Wants=network-online.target docker.service

[Service]
Type=oneshot
ExecStart={exe} guest init
RemainAfterExit=yes
StandardOutput=journal+console

[Install]
WantedBy=multi-user.target
"""


def render_unit(exe: str = '/usr/local/bin/fcvm') -> str:
    return SYSTEMD_UNIT.format(exe=exe)


def running_as_root() -> bool:
    return os.geteuid() == 0
