"""Host prerequisite checks: tools, boot artifacts, and the KVM device."""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from .config import ArtifactPaths
from .errors import PrerequisiteError
from .util import which

log = logger

KVM_PATH = Path('/dev/kvm')

REQUIRED_CMDS = [
    'firecracker',
    'ip',
    'iptables',
    'mkfs.ext4',
    'mount',
    'umount',
    'rsync',
]
OPTIONAL_CMDS = ['sysctl', 'chown']


def check_commands() -> tuple[list[str], list[str]]:
    missing = [c for c in REQUIRED_CMDS if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def validate_artifacts(art: ArtifactPaths) -> None:
    if not art.kernel_path.is_file():
        raise PrerequisiteError(f'Kernel not found: {art.kernel_path}')
    if not art.rootfs_path.is_file():
        raise PrerequisiteError(f'Rootfs not found: {art.rootfs_path}')
    log.info('Kernel and rootfs validated')


def check_kvm(path: Path = KVM_PATH) -> None:
    if not path.exists():
        raise PrerequisiteError(
            f'{path} not found!\n'
            'Run with: docker run --device /dev/kvm ...\n'
            'Or enable KVM in your hypervisor if running in a VM.'
        )
    if not os.access(str(path), os.R_OK | os.W_OK):
        raise PrerequisiteError(
            f'{path} not accessible!\nCheck permissions or run as root.'
        )
    log.info('KVM available')
