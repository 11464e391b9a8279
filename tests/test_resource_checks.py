"""Tests for VM resource check helpers."""

from __future__ import annotations

from fcvm.config import FCVMConfig, PathsConfig, VMProfile
from fcvm.resource_checks import vm_resource_warning_lines


def test_no_warnings_within_capacity(monkeypatch, tmp_path) -> None:
    cfg = FCVMConfig(paths=PathsConfig(state_dir=str(tmp_path)))
    monkeypatch.setattr('fcvm.resource_checks.host_mem_total_mb', lambda: 16384)
    monkeypatch.setattr('fcvm.resource_checks.host_cpu_count', lambda: 8)
    monkeypatch.setattr('fcvm.resource_checks.host_free_disk_mb', lambda p: 100000)
    assert vm_resource_warning_lines(cfg) == []


def test_warnings_for_oversized_profile(monkeypatch, tmp_path) -> None:
    cfg = FCVMConfig(
        vm=VMProfile(vcpu_count=16, memory_mb=8192, workspace_size_mb=4096),
        paths=PathsConfig(state_dir=str(tmp_path)),
    )
    monkeypatch.setattr('fcvm.resource_checks.host_mem_total_mb', lambda: 4096)
    monkeypatch.setattr('fcvm.resource_checks.host_cpu_count', lambda: 4)
    monkeypatch.setattr('fcvm.resource_checks.host_free_disk_mb', lambda p: 1000)
    text = '\n'.join(vm_resource_warning_lines(cfg))
    assert 'FC_MEM' in text
    assert 'FC_VCPU' in text
    assert 'free space' in text


def test_unknown_host_capacity_is_silent(monkeypatch, tmp_path) -> None:
    cfg = FCVMConfig(paths=PathsConfig(state_dir=str(tmp_path)))
    monkeypatch.setattr('fcvm.resource_checks.host_mem_total_mb', lambda: None)
    monkeypatch.setattr('fcvm.resource_checks.host_cpu_count', lambda: None)
    monkeypatch.setattr('fcvm.resource_checks.host_free_disk_mb', lambda p: None)
    assert vm_resource_warning_lines(cfg) == []
