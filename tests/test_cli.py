"""Tests for the fcvm command line."""

from __future__ import annotations

import importlib

import pytest

from fcvm.cli.main import _normalize_argv, main

cli_main = importlib.import_module('fcvm.cli.main')


@pytest.fixture
def env(tmp_path, monkeypatch):
    for name in ('FC_CONFIG_FILE', 'FC_KERNEL', 'FC_ROOTFS', 'FC_CONSOLE_TYPE'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('FC_STATE_DIR', str(tmp_path / 'state'))
    monkeypatch.setenv('FC_WORKSPACE', str(tmp_path / 'workspace'))
    monkeypatch.setenv('FC_VERBOSITY', '0')
    return tmp_path


class FakeOrchestrator:
    runs: list = []

    def __init__(self, cfg):
        self.cfg = cfg

    def run(self):
        FakeOrchestrator.runs.append(self.cfg.vm.console_mode)
        return 5


def _exit_code(argv) -> int:
    with pytest.raises(SystemExit) as info:
        main(argv)
    return info.value.code


def test_normalize_argv() -> None:
    assert _normalize_argv([]) == ['start']
    assert _normalize_argv(['-v']) == ['start', '-v']
    assert _normalize_argv(['shell', '-vv']) == ['start', '-vv']
    assert _normalize_argv(['--help']) == ['help']
    assert _normalize_argv(['detach']) == ['detach']
    assert _normalize_argv(['guest', 'unit']) == ['guest', 'unit']
    assert _normalize_argv(['launch']) is None


def test_help_exits_zero(env, capsys) -> None:
    assert _exit_code(['help']) == 0
    out = capsys.readouterr().out
    assert 'Usage: fcvm [command]' in out
    assert 'FC_CONSOLE_TYPE' in out


def test_unknown_command_prints_usage_and_fails(env, capsys) -> None:
    assert _exit_code(['launch']) == 1
    err = capsys.readouterr().err
    assert 'Unknown command: launch' in err
    assert 'Usage: fcvm [command]' in err


def test_config_prints_resolved_values(env, capsys, monkeypatch) -> None:
    monkeypatch.setenv('FC_VCPU', '6')
    assert _exit_code(['config']) == 0
    out = capsys.readouterr().out
    assert 'Firecracker Configuration:' in out
    assert '  FC_VCPU=6' in out
    assert not (env / 'state').exists()


def test_start_shell_and_detach_modes(env, monkeypatch) -> None:
    monkeypatch.setattr(cli_main, 'Orchestrator', FakeOrchestrator)
    FakeOrchestrator.runs = []
    assert _exit_code(['start']) == 5
    assert _exit_code(['shell']) == 5
    assert _exit_code([]) == 5
    assert _exit_code(['detach']) == 5
    assert FakeOrchestrator.runs == ['interactive'] * 3 + ['detached']


def test_start_missing_kernel_exits_one(env, monkeypatch, capsys) -> None:
    monkeypatch.setattr('fcvm.orchestrator.destroy_network', lambda *a, **k: None)
    monkeypatch.setattr('fcvm.orchestrator.ensure_network', lambda *a, **k: pytest.fail('network touched'))
    assert _exit_code(['start']) == 1
    err = capsys.readouterr().err
    assert 'Kernel not found' in err
    assert 'vmlinux' in err


def test_invalid_env_exits_one(env, monkeypatch, capsys) -> None:
    monkeypatch.setenv('FC_MEM', 'plenty')
    monkeypatch.setattr(cli_main, 'Orchestrator', FakeOrchestrator)
    assert _exit_code(['start']) == 1
    assert 'FC_MEM must be an integer' in capsys.readouterr().err


def test_guest_unit(env, capsys) -> None:
    assert _exit_code(['guest', 'unit']) == 0
    assert 'ExecStart=/usr/local/bin/fcvm guest init' in capsys.readouterr().out


def test_doctor_reports_missing_pieces(env, monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli_main, 'check_commands', lambda: (['firecracker'], []))
    monkeypatch.setattr(cli_main, 'vm_resource_warning_lines', lambda cfg: [])
    assert _exit_code(['doctor']) == 1
    out = capsys.readouterr().out
    assert '❌ Required commands - missing: firecracker' in out
    assert '❌ Kernel' in out
