"""Tests for workspace image materialize/reconcile."""

from __future__ import annotations

import math
import os
import shutil
from pathlib import Path

import pytest

from fcvm.util import CmdError, CmdResult
from fcvm.workspace import (
    dir_size_kb,
    image_size_mb,
    materialize,
    mounted,
    reconcile,
)

MiB = 1024 * 1024


def _clear(path: Path) -> None:
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


class FakeLoop:
    """Loop mounts backed by plain directories; rsync via shutil."""

    def __init__(self, tmp_path: Path):
        self.store = tmp_path / 'fake-images'
        self.store.mkdir()
        self.mounts: dict[str, Path] = {}
        self.calls: list[list[str]] = []
        self.fail_mount = False
        self.fail_rsync = False

    def backing(self, image) -> Path:
        return self.store / Path(image).name

    def __call__(self, cmd, check=True, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        name = cmd[0]
        if name == 'mkfs.ext4':
            back = self.backing(cmd[-1])
            if back.exists():
                shutil.rmtree(back)
            back.mkdir()
            return CmdResult(0, '', '')
        if name == 'mount':
            image, mnt = cmd[-2], Path(cmd[-1])
            if self.fail_mount or not self.backing(image).exists():
                res = CmdResult(32, '', 'wrong fs type')
                if check:
                    raise CmdError(cmd, res)
                return res
            shutil.copytree(self.backing(image), mnt, dirs_exist_ok=True)
            self.mounts[str(mnt)] = self.backing(image)
            return CmdResult(0, '', '')
        if name == 'umount':
            mnt = Path(cmd[-1])
            back = self.mounts.pop(str(mnt))
            shutil.rmtree(back)
            shutil.copytree(mnt, back)
            _clear(mnt)
            return CmdResult(0, '', '')
        if name == 'rsync':
            if self.fail_rsync:
                res = CmdResult(23, '', 'partial transfer')
                if check:
                    raise CmdError(cmd, res)
                return res
            src, dst = Path(cmd[-2]), Path(cmd[-1])
            if '--delete' in cmd:
                _clear(dst)
            shutil.copytree(src, dst, dirs_exist_ok=True)
            return CmdResult(0, '', '')
        return CmdResult(0, '', '')


@pytest.fixture
def loop(tmp_path, monkeypatch):
    fake = FakeLoop(tmp_path)
    monkeypatch.setattr('fcvm.workspace.run_cmd', fake)
    return fake


def test_image_size_formula() -> None:
    assert image_size_mb(0, 2048) == 2048
    assert image_size_mb(1024, 2048) == 2048
    # 10 GB of content needs 12 GB
    assert image_size_mb(10 * 1024 * 1024, 2048) == 12288
    for kb in (1, 1023, 1024, 5000, 123457, 2 * 1024 * 1024 + 7):
        assert image_size_mb(kb, 1) == max(1, math.ceil(kb / 1024 * 1.2))


def test_empty_source_gives_exact_requested_size(tmp_path, loop) -> None:
    src = tmp_path / 'empty'
    src.mkdir()
    out = materialize(src, tmp_path / 'ws' / 'workspace.ext4', 64)
    assert out.stat().st_size == 64 * MiB
    assert list(loop.backing(out).iterdir()) == []
    assert not any(c[0] in ('mount', 'rsync') for c in loop.calls)


def test_absent_source_gives_empty_image(tmp_path, loop) -> None:
    out = materialize(tmp_path / 'nope', tmp_path / 'workspace.ext4', 16)
    assert out.stat().st_size == 16 * MiB


def test_materialize_sizes_for_content(tmp_path, loop) -> None:
    src = tmp_path / 'src'
    src.mkdir()
    (src / 'blob.bin').write_bytes(os.urandom(3 * MiB))
    out = materialize(src, tmp_path / 'workspace.ext4', 1)
    expect = image_size_mb(dir_size_kb(src), 1)
    assert expect > 1
    assert out.stat().st_size == expect * MiB
    assert ['chown', '-R', '1000:1000'] == [
        c for c in loop.calls if c[0] == 'chown'
    ][0][:3]


def test_materialize_then_reconcile_round_trip(tmp_path, loop) -> None:
    src = tmp_path / 'src'
    (src / 'pkg').mkdir(parents=True)
    (src / 'README.md').write_text('hello\n')
    (src / 'pkg' / 'mod.py').write_text('x = 1\n')
    image = materialize(src, tmp_path / 'workspace.ext4', 8)
    assert reconcile(image, src) is True
    assert (src / 'README.md').read_text() == 'hello\n'
    assert (src / 'pkg' / 'mod.py').read_text() == 'x = 1\n'
    assert not loop.mounts


def test_reconcile_deletes_stale_files(tmp_path, loop) -> None:
    src = tmp_path / 'src'
    src.mkdir()
    (src / 'keep.txt').write_text('keep')
    image = materialize(src, tmp_path / 'workspace.ext4', 8)
    # the guest deleted nothing, but the host grew a file the image lacks
    (src / 'stale.txt').write_text('gone soon')
    reconcile(image, src)
    assert (src / 'keep.txt').exists()
    assert not (src / 'stale.txt').exists()
    rsync = [c for c in loop.calls if c[0] == 'rsync'][-1]
    assert '--delete' in rsync


def test_reconcile_mount_failure_is_not_fatal(tmp_path, loop) -> None:
    src = tmp_path / 'src'
    src.mkdir()
    (src / 'a.txt').write_text('a')
    image = materialize(src, tmp_path / 'workspace.ext4', 8)
    loop.fail_mount = True
    assert reconcile(image, src) is False
    assert (src / 'a.txt').read_text() == 'a'


def test_reconcile_skips_missing_inputs(tmp_path, loop) -> None:
    assert reconcile(tmp_path / 'missing.ext4', tmp_path) is False
    image = tmp_path / 'img.ext4'
    image.write_bytes(b'')
    assert reconcile(image, tmp_path / 'no-dir') is False
    assert loop.calls == []


def test_copy_failure_still_unmounts(tmp_path, loop) -> None:
    src = tmp_path / 'src'
    src.mkdir()
    (src / 'a.txt').write_text('a')
    loop.fail_rsync = True
    with pytest.raises(CmdError):
        materialize(src, tmp_path / 'workspace.ext4', 8)
    names = [c[0] for c in loop.calls]
    assert names.index('umount') > names.index('rsync')
    assert not loop.mounts


def test_mounted_cleans_up_on_error(tmp_path, loop) -> None:
    image = tmp_path / 'img.ext4'
    loop.backing(image).mkdir()
    seen = []
    with pytest.raises(ValueError):
        with mounted(image) as mnt:
            seen.append(mnt)
            raise ValueError('boom')
    assert not seen[0].exists()
    assert loop.calls[-1][0] == 'umount'
