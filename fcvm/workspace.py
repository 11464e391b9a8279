"""Workspace block-device images: host directory in, host directory back out."""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import Iterator

from loguru import logger

from .errors import FCVMError
from .util import CmdError, run_cmd

log = logger

GUEST_UID = 1000
GUEST_GID = 1000


class MountError(FCVMError):
    """Raised when a workspace image cannot be loop-mounted."""


def image_size_mb(source_kb: int, requested_mb: int) -> int:
    """Image size in MB: requested size, or source size plus 20% if larger."""
    # ceil(source_kb / 1024 * 1.2) without float rounding
    needed = -(-int(source_kb) * 6 // (1024 * 5))
    return max(int(requested_mb), needed)


def dir_size_kb(path: Path) -> int:
    """Disk usage of ``path`` in KB, counted the way ``du -sk`` does."""
    total_blocks = 0
    seen: set[tuple[int, int]] = set()
    for root, _dirs, files in os.walk(path):
        for name in [root, *(os.path.join(root, f) for f in files)]:
            try:
                st = os.lstat(name)
            except OSError:
                continue
            key = (st.st_dev, st.st_ino)
            if key in seen:
                continue
            seen.add(key)
            total_blocks += st.st_blocks
    return total_blocks * 512 // 1024


def _has_content(path: Path) -> bool:
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError:
        return False


def _create_image(path: Path, size_mb: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.truncate(size_mb * 1024 * 1024)
    run_cmd(['mkfs.ext4', '-F', '-q', str(path)], check=True, capture=True)


def _remove_mount_point(mount_point: Path) -> None:
    try:
        mount_point.rmdir()
    except OSError:
        pass


@contextlib.contextmanager
def mounted(image: Path, *, readonly: bool = False) -> Iterator[Path]:
    """Loop-mount ``image`` on a temporary directory for the block's duration.

    The image is unmounted and the mount point removed on every exit path,
    including exceptions raised inside the block.
    """
    mount_point = Path(tempfile.mkdtemp(prefix='fcvm-ws-'))
    opts = 'loop,ro' if readonly else 'loop'
    try:
        run_cmd(
            ['mount', '-o', opts, str(image), str(mount_point)],
            check=True,
            capture=True,
        )
    except CmdError as ex:
        _remove_mount_point(mount_point)
        raise MountError(
            f'Cannot mount {image}: {ex.result.stderr.strip()}'
        ) from ex
    try:
        yield mount_point
    finally:
        res = run_cmd(['umount', str(mount_point)], check=False, capture=True)
        if res.code != 0:
            log.warning('umount {} failed: {}', mount_point, res.stderr.strip())
        _remove_mount_point(mount_point)


def materialize(
    source_dir: Path, output_path: Path, requested_size_mb: int
) -> Path:
    """Build an ext4 image at ``output_path`` holding a copy of ``source_dir``."""
    source_dir = Path(source_dir)
    output_path = Path(output_path)
    if not _has_content(source_dir):
        log.info(
            'Creating empty workspace image ({}MB): {}',
            requested_size_mb,
            output_path,
        )
        _create_image(output_path, int(requested_size_mb))
        return output_path

    size_mb = image_size_mb(dir_size_kb(source_dir), requested_size_mb)
    if size_mb > requested_size_mb:
        log.info('Adjusting workspace size to {}MB to fit content', size_mb)
    _create_image(output_path, size_mb)
    with mounted(output_path) as mnt:
        run_cmd(
            ['rsync', '-a', f'{source_dir}/', f'{mnt}/'],
            check=True,
            capture=True,
        )
        run_cmd(
            ['chown', '-R', f'{GUEST_UID}:{GUEST_GID}', str(mnt)],
            check=False,
            capture=True,
        )
    log.info('Workspace image created: {} ({}MB)', output_path, size_mb)
    return output_path


def reconcile(image_path: Path, target_dir: Path) -> bool:
    """Mirror the image's contents onto ``target_dir``, deleting stale files.

    Returns:
        bool: True if the target was synced, False if skipped.
    """
    image_path = Path(image_path)
    target_dir = Path(target_dir)
    if not image_path.is_file() or not target_dir.is_dir():
        log.debug(
            'Skipping workspace sync (image={}, target={})',
            image_path,
            target_dir,
        )
        return False
    try:
        with mounted(image_path) as mnt:
            log.info('Syncing workspace changes back to {}', target_dir)
            run_cmd(
                ['rsync', '-a', '--delete', f'{mnt}/', f'{target_dir}/'],
                check=True,
                capture=True,
            )
    except MountError as ex:
        log.debug('Workspace image not mountable, skipping sync: {}', ex)
        return False
    log.info('Workspace synced')
    return True
