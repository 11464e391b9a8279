"""Tests for console rendering helpers."""

from __future__ import annotations

from fcvm.config import FCVMConfig
from fcvm.status import clip, render_start_banner, status_line


def test_status_line_icons() -> None:
    assert status_line(True, 'KVM') == '✅ KVM'
    assert status_line(False, 'Docker', 'down') == '❌ Docker - down'
    assert status_line(None, 'Optional').startswith('➖')


def test_clip() -> None:
    text = '\n'.join(str(i) for i in range(100))
    out = clip(text, max_lines=10).splitlines()
    assert len(out) == 11
    assert out[-1] == '... (90 more lines)'
    assert clip('a\nb') == 'a\nb'


def test_start_banner_mentions_profile() -> None:
    cfg = FCVMConfig()
    banner = render_start_banner(cfg, cfg.artifacts())
    assert 'vCPUs:     2' in banner
    assert 'Memory:    2048MB' in banner
    assert 'VM IP:     172.16.0.2' in banner
    assert 'vmlinux' in banner
