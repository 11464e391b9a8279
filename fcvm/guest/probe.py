"""Kernel feature detection and control-group mounts inside the guest."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from ..util import run_cmd

log = logger

CGROUP_ROOT = Path('/sys/fs/cgroup')

LEGACY_CONTROLLERS = (
    'cpu,cpuacct',
    'cpuset',
    'memory',
    'devices',
    'freezer',
    'net_cls,net_prio',
    'blkio',
    'pids',
)


@dataclass
class KernelFeatures:
    cgroup_fs: bool = False
    pid_namespace: bool = False
    net_namespace: bool = False
    overlay_fs: bool = False

    def missing(self) -> list[str]:
        names = {
            'cgroup_fs': 'cgroup filesystem',
            'pid_namespace': 'PID namespace',
            'net_namespace': 'NET namespace',
            'overlay_fs': 'overlay filesystem',
        }
        return [label for key, label in names.items() if not getattr(self, key)]


@dataclass
class CgroupSetup:
    unified: bool = False
    legacy_mounted: list[str] = field(default_factory=list)
    legacy_failed: list[str] = field(default_factory=list)


def filesystems(proc_root: Path = Path('/proc')) -> set[str]:
    """Filesystem types the running kernel supports."""
    try:
        text = (proc_root / 'filesystems').read_text(encoding='utf-8')
    except OSError:
        return set()
    out: set[str] = set()
    for line in text.splitlines():
        parts = line.split()
        if parts:
            out.add(parts[-1])
    return out


def probe_kernel_features(
    proc_root: Path = Path('/proc'), cgroup_root: Path = CGROUP_ROOT
) -> KernelFeatures:
    fs = filesystems(proc_root)
    features = KernelFeatures(
        cgroup_fs=bool({'cgroup', 'cgroup2'} & fs) or cgroup_root.is_dir(),
        pid_namespace=(proc_root / 'self' / 'ns' / 'pid').exists(),
        net_namespace=(proc_root / 'self' / 'ns' / 'net').exists(),
        overlay_fs='overlay' in fs,
    )
    for label in features.missing():
        log.warning('Kernel feature missing: {}', label)
    return features


def is_mountpoint(path: Path) -> bool:
    return os.path.ismount(str(path))


def unified_hierarchy_mounted(cgroup_root: Path = CGROUP_ROOT) -> bool:
    return (cgroup_root / 'cgroup.controllers').exists()


def ensure_cgroups(cgroup_root: Path = CGROUP_ROOT) -> CgroupSetup:
    """Mount cgroup v2, falling back to per-controller v1 hierarchies."""
    setup = CgroupSetup()
    if unified_hierarchy_mounted(cgroup_root):
        setup.unified = True
        log.debug('Unified cgroup hierarchy already mounted at {}', cgroup_root)
        return setup
    cgroup_root.mkdir(parents=True, exist_ok=True)
    res = run_cmd(
        ['mount', '-t', 'cgroup2', 'none', str(cgroup_root)],
        check=False,
        capture=True,
    )
    if res.code == 0:
        setup.unified = True
        log.info('Mounted unified cgroup hierarchy at {}', cgroup_root)
        return setup

    log.warning(
        'cgroup2 mount failed ({}); falling back to legacy hierarchies',
        (res.stderr or res.stdout).strip(),
    )
    if not is_mountpoint(cgroup_root):
        run_cmd(
            ['mount', '-t', 'tmpfs', 'cgroup', str(cgroup_root)],
            check=False,
            capture=True,
        )
    for controller in LEGACY_CONTROLLERS:
        target = cgroup_root / controller
        if is_mountpoint(target):
            setup.legacy_mounted.append(controller)
            continue
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as ex:
            log.warning('Cannot create {}: {}', target, ex)
            setup.legacy_failed.append(controller)
            continue
        res = run_cmd(
            ['mount', '-t', 'cgroup', '-o', controller, 'cgroup', str(target)],
            check=False,
            capture=True,
        )
        if res.code == 0:
            setup.legacy_mounted.append(controller)
        else:
            log.warning('cgroup controller {} unavailable', controller)
            setup.legacy_failed.append(controller)
    return setup
