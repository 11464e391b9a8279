"""Firecracker process launch in interactive or detached console mode."""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path

from loguru import logger

from .util import shell_join

log = logger

INTERACTIVE = 'interactive'
DETACHED = 'detached'


def remove_stale_socket(socket_path: Path) -> None:
    path = Path(socket_path)
    if path.exists() or path.is_symlink():
        log.debug('Removing stale control socket {}', path)
    path.unlink(missing_ok=True)


class VMSupervisor:
    """Owns the Firecracker child process for one orchestrator run."""

    def __init__(self, binary: str = 'firecracker', log_path: Path | None = None):
        self.binary = binary
        self.log_path = Path(log_path or '/var/log/firecracker.log')
        self._procs: dict[int, subprocess.Popen] = {}

    def command(
        self, config_path: Path, socket_path: Path, *, log_path: str, level: str
    ) -> list[str]:
        return [
            self.binary,
            '--api-sock',
            str(socket_path),
            '--config-file',
            str(config_path),
            '--log-path',
            log_path,
            '--level',
            level,
        ]

    def start(
        self,
        config_path: Path,
        socket_path: Path,
        mode: str = INTERACTIVE,
        *,
        level: str = 'Warning',
    ) -> int:
        """Start the VM process.

        In interactive mode this blocks until the VM exits and returns its exit
        code. In detached mode it returns the pid of the background process.
        """
        remove_stale_socket(socket_path)
        if mode == INTERACTIVE:
            cmd = self.command(
                config_path, socket_path, log_path='/dev/stderr', level=level
            )
            log.debug('RUN (attached): {}', shell_join(cmd))
            proc = subprocess.Popen(cmd)
            self._procs[proc.pid] = proc
            code = proc.wait()
            log.info('Firecracker exited with code {}', code)
            return code
        if mode == DETACHED:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            cmd = self.command(
                config_path,
                socket_path,
                log_path=str(self.log_path),
                level=level,
            )
            log.debug('RUN (detached): {}', shell_join(cmd))
            with open(self.log_path, 'ab') as out:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                )
            self._procs[proc.pid] = proc
            log.info('Firecracker started (PID: {})', proc.pid)
            return proc.pid
        raise ValueError(f'Unknown console mode: {mode!r}')

    def wait_for_exit(self, pid: int, *, interval: float = 1.0) -> int | None:
        """Block until ``pid`` exits; return its exit code when known."""
        proc = self._procs.get(pid)
        if proc is not None:
            code = proc.wait()
            log.info('Firecracker (PID: {}) exited with code {}', pid, code)
            return code
        while _pid_alive(pid):
            time.sleep(interval)
        return None

    def running(self) -> list[int]:
        return [pid for pid, p in self._procs.items() if p.poll() is None]

    def terminate(self, *, timeout: float = 10.0) -> None:
        """Stop any VM process still running, escalating to SIGKILL."""
        for pid in self.running():
            proc = self._procs[pid]
            log.info('Stopping Firecracker (PID: {})', pid)
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                log.warning('Firecracker (PID: {}) ignored SIGTERM; killing', pid)
                proc.kill()
                proc.wait()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
