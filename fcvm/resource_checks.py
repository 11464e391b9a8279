"""VM resource sanity checks against host capacity."""

from __future__ import annotations

import os
from pathlib import Path

from .config import FCVMConfig


def host_mem_total_mb() -> int | None:
    try:
        text = Path('/proc/meminfo').read_text(encoding='utf-8', errors='ignore')
    except Exception:
        return None
    for line in text.splitlines():
        if line.startswith('MemTotal:'):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) // 1024
    return None


def host_cpu_count() -> int | None:
    count = os.cpu_count()
    return int(count) if count else None


def host_free_disk_mb(path: Path) -> int | None:
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        stat = os.statvfs(str(probe))
    except OSError:
        return None
    return int(stat.f_bavail) * int(stat.f_frsize) // (1024**2)


def vm_resource_warning_lines(cfg: FCVMConfig) -> list[str]:
    warnings: list[str] = []
    mem_total_mb = host_mem_total_mb()
    if mem_total_mb is not None and cfg.vm.memory_mb > int(mem_total_mb * 0.8):
        warnings.append(
            'Requested VM memory is large relative to host total memory: '
            f'requested={cfg.vm.memory_mb} MiB, MemTotal={mem_total_mb} MiB. '
            'If the VM fails to boot, lower FC_MEM.'
        )
    cpu_count = host_cpu_count()
    if cpu_count is not None and cfg.vm.vcpu_count > cpu_count:
        warnings.append(
            'Requested vCPUs exceed host CPU count: '
            f'requested={cfg.vm.vcpu_count}, host_cpus={cpu_count}. '
            'Lower FC_VCPU if the VM is sluggish or fails to start.'
        )
    art = cfg.artifacts()
    free_mb = host_free_disk_mb(art.workspace_image_path.parent)
    if free_mb is not None and cfg.vm.workspace_size_mb > free_mb * 0.9:
        warnings.append(
            'Requested workspace image may not fit in free space: '
            f'requested={cfg.vm.workspace_size_mb} MiB, free≈{free_mb} MiB '
            f'(dir={art.workspace_image_path.parent}).'
        )
    return warnings
