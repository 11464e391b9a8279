"""Console rendering for status lines, clipped diagnostics, and banners."""

from __future__ import annotations

import textwrap

from .config import ArtifactPaths, FCVMConfig


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def clip(text: str, *, max_lines: int = 60) -> str:
    lines = (text or '').strip().splitlines()
    if len(lines) <= max_lines:
        return '\n'.join(lines)
    keep: list[str] = list(lines[:max_lines])
    keep.append(f'... ({len(lines) - max_lines} more lines)')
    return '\n'.join(keep)


def indent(lines: list[str], prefix: str = '  ') -> str:
    return '\n'.join(prefix + line for line in lines)


def render_start_banner(cfg: FCVMConfig, art: ArtifactPaths) -> str:
    return textwrap.dedent(f"""
    ╔════════════════════════════════════════════════════════════════╗
    ║  Firecracker MicroVM                                           ║
    ║  Hardware-Isolated Development Environment                     ║
    ╚════════════════════════════════════════════════════════════════╝

      VM Configuration:
        vCPUs:     {cfg.vm.vcpu_count}
        Memory:    {cfg.vm.memory_mb}MB
        Kernel:    {art.kernel_path.name}
        Rootfs:    {art.rootfs_path.name}
        Console:   {cfg.vm.console_mode}

      Network:
        VM IP:     {cfg.network.vm_ip}
        Gateway:   {cfg.network.tap_ip}

      Workspace:
        Host:      {art.host_workspace}
        VM Mount:  /workspace

      Console:
        Auto-login as 'sandbox' user
    """).strip('\n')
