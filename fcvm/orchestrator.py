"""Host-side lifecycle: validate, provision, render, launch, and clean up."""

from __future__ import annotations

import atexit
import enum
import signal
import threading
import time
from pathlib import Path
from typing import Callable

import ubelt as ub
from loguru import logger

from .config import FCVMConfig
from .host import check_commands, check_kvm, validate_artifacts
from .net import NetworkReport, destroy_network, ensure_network
from .render import render_vm_config
from .resource_checks import vm_resource_warning_lines
from .status import render_start_banner
from .supervisor import DETACHED, INTERACTIVE, VMSupervisor, remove_stale_socket
from .workspace import materialize, reconcile

log = logger


class Phase(enum.Enum):
    IDLE = 'idle'
    PREREQUISITES_VALIDATED = 'prerequisites_validated'
    NETWORK_READY = 'network_ready'
    WORKSPACE_READY = 'workspace_ready'
    CONFIG_RENDERED = 'config_rendered'
    VM_RUNNING = 'vm_running'
    VM_EXITED = 'vm_exited'
    VM_DETACHED_RUNNING = 'vm_detached_running'
    CLEANUP_COMPLETE = 'cleanup_complete'


_HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)


class Orchestrator:
    """Run one VM session and guarantee teardown of what it provisioned."""

    def __init__(
        self,
        cfg: FCVMConfig,
        *,
        supervisor: VMSupervisor | None = None,
        kvm_path: Path | None = None,
        boot_pause: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg.validate()
        self.art = cfg.artifacts()
        self.supervisor = supervisor or VMSupervisor(log_path=self.art.vm_log_path)
        self.kvm_path = kvm_path
        self.boot_pause = boot_pause
        self.sleep = sleep
        self.phase = Phase.IDLE
        self.history: list[Phase] = [Phase.IDLE]
        self.network_report: NetworkReport | None = None
        self.workspace_image: Path | None = None
        self.cleanup_runs = 0
        self._previous_handlers: dict[int, object] = {}

    def _advance(self, phase: Phase) -> None:
        log.debug('Phase {} -> {}', self.phase.value, phase.value)
        self.phase = phase
        self.history.append(phase)

    def ensure_directories(self) -> None:
        for path in self.art.required_dirs():
            ub.Path(path).ensuredir()

    def validate(self) -> None:
        validate_artifacts(self.art)
        if self.kvm_path is None:
            check_kvm()
        else:
            check_kvm(self.kvm_path)
        missing, _ = check_commands()
        if missing:
            log.warning('Missing host commands: {}', ', '.join(missing))
        for line in vm_resource_warning_lines(self.cfg):
            log.warning(line)
        self._advance(Phase.PREREQUISITES_VALIDATED)

    def provision_network(self) -> None:
        log.info('Setting up network (TAP: {})...', self.cfg.network.tap_device)
        self.network_report = ensure_network(self.cfg.network)
        print(self.network_report.summary())
        self._advance(Phase.NETWORK_READY)

    def prepare_workspace(self) -> None:
        log.info(
            'Preparing workspace image ({}MB)...', self.cfg.vm.workspace_size_mb
        )
        self.workspace_image = materialize(
            self.art.host_workspace,
            self.art.workspace_image_path,
            self.cfg.vm.workspace_size_mb,
        )
        self._advance(Phase.WORKSPACE_READY)

    def render_config(self) -> Path:
        remove_stale_socket(self.art.control_socket_path)
        out = render_vm_config(self.cfg, self.art)
        self._advance(Phase.CONFIG_RENDERED)
        return out

    def launch(self, config_path: Path) -> int:
        mode = self.cfg.vm.console_mode
        print(render_start_banner(self.cfg, self.art))
        self._advance(Phase.VM_RUNNING)
        if mode == INTERACTIVE:
            code = self.supervisor.start(
                config_path,
                self.art.control_socket_path,
                INTERACTIVE,
                level=self.cfg.vm.log_level,
            )
            self._advance(Phase.VM_EXITED)
            return code
        pid = self.supervisor.start(
            config_path,
            self.art.control_socket_path,
            DETACHED,
            level=self.cfg.vm.log_level,
        )
        self._advance(Phase.VM_DETACHED_RUNNING)
        self.sleep(self.boot_pause)
        log.info('VM should be accessible at {}', self.cfg.network.vm_ip)
        code = self.supervisor.wait_for_exit(pid)
        return 0 if code is None else code

    def run(self) -> int:
        """Execute every phase in order; cleanup runs however this exits."""
        self._install_cleanup()
        try:
            self.ensure_directories()
            self.validate()
            self.provision_network()
            self.prepare_workspace()
            config_path = self.render_config()
            return self.launch(config_path)
        finally:
            try:
                self.cleanup()
            finally:
                self._restore_signal_handlers()

    def _install_cleanup(self) -> None:
        atexit.register(self.cleanup)
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(
                signum, self._on_signal
            )

    def _on_signal(self, signum, _frame) -> None:
        if self.cleanup_runs:
            log.warning('Received signal {} during cleanup; ignoring', signum)
            return
        log.warning('Received signal {}; shutting down', signum)
        raise SystemExit(128 + signum)

    def _ignore_signals(self) -> None:
        for signum in self._previous_handlers:
            try:
                signal.signal(signum, signal.SIG_IGN)
            except (TypeError, ValueError):
                pass

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except (TypeError, ValueError):
                pass
        self._previous_handlers.clear()
        atexit.unregister(self.cleanup)

    def cleanup(self) -> None:
        """Best-effort teardown that runs at most once.

        Every step runs even if an earlier one is interrupted. An interrupt
        (``KeyboardInterrupt`` or ``SystemExit``) raised by a step is
        re-raised after the last step; ordinary errors are only logged.
        """
        if self.cleanup_runs:
            return
        self.cleanup_runs += 1
        self._ignore_signals()
        log.info('Cleaning up...')
        interrupt: BaseException | None = None
        steps: list[tuple[str, Callable[[], object]]] = [
            ('stop vm', self.supervisor.terminate),
            ('sync workspace', self._sync_workspace_back),
            ('remove tap device', lambda: destroy_network(self.cfg.network)),
            (
                'remove control socket',
                lambda: remove_stale_socket(self.art.control_socket_path),
            ),
        ]
        for name, step in steps:
            try:
                step()
            except Exception as ex:
                log.warning('Cleanup step {!r} failed: {}', name, ex)
            except BaseException as ex:
                log.warning('Cleanup step {!r} interrupted: {!r}', name, ex)
                if interrupt is None:
                    interrupt = ex
        self._advance(Phase.CLEANUP_COMPLETE)
        log.info('Cleanup complete')
        if interrupt is not None:
            raise interrupt

    def _sync_workspace_back(self) -> None:
        # Only an image built by this run reflects this session's work.
        if self.workspace_image is None:
            return
        reconcile(self.workspace_image, self.art.host_workspace)
