"""Docker daemon configuration, tiered startup, and failure diagnostics."""

from __future__ import annotations

import json
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from loguru import logger

from ..poll import PollAborted, wait_until
from ..util import run_cmd, tail_lines

log = logger

DAEMON_JSON = Path('/etc/docker/daemon.json')
DOCKER_SOCK = Path('/var/run/docker.sock')
DOCKERD_LOG = Path('/var/log/dockerd.log')


@dataclass(frozen=True)
class StrategyResult:
    ok: bool
    name: str
    diagnostic: str = ''


Strategy = Callable[[], StrategyResult]


def storage_driver(overlay_available: bool) -> str:
    return 'overlay2' if overlay_available else 'vfs'


def daemon_config(overlay_available: bool) -> dict:
    # Bridge/NAT networking: dockerd owns its iptables rules and forwarding.
    return {
        'storage-driver': storage_driver(overlay_available),
        'log-driver': 'json-file',
        'log-opts': {'max-size': '10m', 'max-file': '3'},
        'iptables': True,
        'ip-forward': True,
        'live-restore': False,
    }


def write_daemon_config(overlay_available: bool, path: Path = DAEMON_JSON) -> dict:
    """Merge the storage and log settings into the daemon config file."""
    current: dict = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding='utf-8') or '{}')
        except ValueError:
            log.warning('Ignoring unparsable {}', path)
        else:
            if isinstance(loaded, dict):
                current = loaded
    current.update(daemon_config(overlay_available))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(current, indent=2) + '\n', encoding='utf-8')
    log.info('Docker storage driver: {}', current['storage-driver'])
    return current


def engine_alive() -> bool:
    return (
        run_cmd(['docker', 'info'], check=False, capture=True, timeout=15).code
        == 0
    )


def service_active(unit: str) -> bool:
    return (
        run_cmd(
            ['systemctl', 'is-active', '--quiet', unit], check=False, capture=True
        ).code
        == 0
    )


def service_strategy(
    name: str, units: Sequence[str], *, alive: Callable[[], bool] = engine_alive
) -> Strategy:
    """Strategy that starts systemd units and then checks engine liveness."""

    def _start() -> StrategyResult:
        errors: list[str] = []
        for unit in units:
            res = run_cmd(['systemctl', 'start', unit], check=False, capture=True)
            if res.code != 0:
                errors.append(f'{unit}: {(res.stderr or res.stdout).strip()}')
        if alive():
            return StrategyResult(True, name)
        return StrategyResult(False, name, '\n'.join(errors))

    return _start


class DirectDaemonStrategy:
    """Start dockerd as a plain background process and wait for its socket."""

    name = 'dockerd'

    def __init__(
        self,
        *,
        binary: str = 'dockerd',
        socket_path: Path = DOCKER_SOCK,
        log_path: Path = DOCKERD_LOG,
        attempts: int = 30,
        interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.binary = binary
        self.socket_path = Path(socket_path)
        self.log_path = Path(log_path)
        self.attempts = attempts
        self.interval = interval
        self.sleep = sleep
        self.popen = popen
        self.proc = None

    def _failure(self, reason: str) -> StrategyResult:
        tail = tail_lines(self.log_path, 30)
        detail = reason
        if tail:
            detail += '\nLast dockerd log lines:\n' + '\n'.join(tail)
        log.error('Direct dockerd start failed: {}', reason)
        return StrategyResult(False, self.name, detail)

    def __call__(self) -> StrategyResult:
        log.info('Starting {} directly (log: {})', self.binary, self.log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.log_path, 'ab') as out:
                self.proc = self.popen(
                    [self.binary],
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as ex:
            return self._failure(f'cannot execute {self.binary}: {ex}')

        def socket_ready() -> bool:
            if self.socket_path.exists():
                return True
            code = self.proc.poll()
            if code is not None:
                raise PollAborted(f'{self.binary} exited with code {code}')
            return False

        try:
            ok = wait_until(
                socket_ready,
                attempts=self.attempts,
                interval=self.interval,
                label='docker socket',
                sleep=self.sleep,
            )
        except PollAborted as ex:
            return self._failure(str(ex))
        if not ok:
            return self._failure(
                f'{self.socket_path} did not appear after {self.attempts} attempts'
            )
        log.info('dockerd socket ready: {}', self.socket_path)
        return StrategyResult(True, self.name)


def start_engine(
    strategies: Sequence[Strategy], *, alive: Callable[[], bool] = engine_alive
) -> StrategyResult:
    """Try each strategy in order until the engine is live."""
    if alive():
        log.info('Docker engine already running')
        return StrategyResult(True, 'already-running')
    last = StrategyResult(False, 'none', 'no startup strategies configured')
    for strategy in strategies:
        last = strategy()
        if last.ok:
            log.info('Docker engine started via {}', last.name)
            return last
        log.warning('Engine start via {} did not succeed', last.name)
    return last


def diagnostic_bundle(
    *,
    socket_path: Path = DOCKER_SOCK,
    log_path: Path = DOCKERD_LOG,
    lines: int = 30,
) -> str:
    """Plain-text snapshot of engine state for a failed startup."""
    out: list[str] = ['=== Docker startup diagnostics ===']
    present = 'present' if socket_path.exists() else 'missing'
    out.append(f'socket {socket_path}: {present}')
    out.append(
        f'containerd: {"active" if service_active("containerd") else "inactive"}'
    )
    out.append(f'docker: {"active" if service_active("docker") else "inactive"}')
    tail = tail_lines(log_path, lines)
    out.append(f'--- last {lines} lines of {log_path} ---')
    out.extend(tail or ['(no log)'])
    journal = run_cmd(
        ['journalctl', '-u', 'docker', '--no-pager', '-n', str(lines)],
        check=False,
        capture=True,
    )
    out.append(f'--- last {lines} journal entries for docker ---')
    out.extend((journal.stdout or journal.stderr or '(no journal)').strip().splitlines())
    return '\n'.join(out)
