"""Shared utility helpers for subprocess execution, paths, and command formatting."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

log = logger


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> CmdResult:
    cmd = list(cmd)
    log.opt(depth=1).debug('RUN: {}', shell_join(cmd))
    try:
        p = subprocess.run(
            cmd,
            input=input_text if input_text is not None else None,
            capture_output=capture,
            text=text,
            env=env,
            timeout=timeout,
        )
    except FileNotFoundError as ex:
        # Missing binaries are reported like a shell would (code 127).
        res = CmdResult(127, '', str(ex))
        if check:
            log.opt(depth=1).error(
                'Command not found: {}', shell_join(cmd)
            )
            raise CmdError(cmd, res) from ex
        return res
    except subprocess.TimeoutExpired as ex:
        res = CmdResult(124, '', f'timed out after {timeout}s')
        if check:
            log.opt(depth=1).error('Command timed out: {}', shell_join(cmd))
            raise CmdError(cmd, res) from ex
        return res
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if check and p.returncode != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={} stdout={}',
            p.returncode,
            shell_join(cmd),
            res.stderr.strip(),
            res.stdout.strip(),
        )
        raise CmdError(cmd, res)
    if p.returncode == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shell_join(cmd))
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


def tail_lines(path: Path, n: int = 30) -> list[str]:
    """Return the last ``n`` lines of a text file, or nothing if unreadable."""
    try:
        text = Path(path).read_text(encoding='utf-8', errors='replace')
    except OSError:
        return []
    return text.splitlines()[-n:]


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))
