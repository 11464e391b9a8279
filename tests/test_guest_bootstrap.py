"""Tests for the guest bootstrap sequence."""

from __future__ import annotations

import pytest

from fcvm.guest.bootstrap import (
    HOME_SUBDIRS,
    EngineState,
    GuestBootstrap,
    GuestSettings,
    NetworkState,
    render_unit,
)
from fcvm.guest.engine import StrategyResult
from fcvm.guest.probe import KernelFeatures
from fcvm.util import CmdResult


@pytest.fixture
def guest(tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(list(cmd))
        if cmd[:2] == ['docker', '--version']:
            return CmdResult(0, 'Docker version 27.0.1\n', '')
        return CmdResult(3, '', '')

    monkeypatch.setattr('fcvm.guest.bootstrap.run_cmd', fake_run)
    monkeypatch.setattr('fcvm.guest.engine.run_cmd', fake_run)
    monkeypatch.setattr(
        'fcvm.guest.bootstrap.probe_kernel_features',
        lambda: KernelFeatures(True, True, True, False),
    )
    monkeypatch.setattr('fcvm.guest.bootstrap.ensure_cgroups', lambda: None)
    settings = GuestSettings(
        attempts=5,
        interval=1.0,
        workspace=tmp_path / 'workspace',
        home=tmp_path / 'home' / 'sandbox',
        resolv_conf=tmp_path / 'resolv.conf',
        daemon_json=tmp_path / 'docker' / 'daemon.json',
        docker_sock=tmp_path / 'docker.sock',
        dockerd_log=tmp_path / 'dockerd.log',
    )
    return settings, calls


def test_readiness_wait_is_bounded(guest, capsys) -> None:
    settings, _calls = guest
    sleeps = []
    liveness = []

    def never_alive():
        liveness.append(1)
        return False

    boot = GuestBootstrap(
        settings,
        sleep=sleeps.append,
        network_ready=lambda iface: True,
        engine_alive=never_alive,
        strategies=[lambda: StrategyResult(False, 'none', 'nothing worked')],
    )
    report = boot.run()
    assert report.network is NetworkState.READY
    assert report.engine is EngineState.FAILED
    # one up-front check in start_engine plus at most `attempts` polls
    assert len(liveness) == 1 + settings.attempts
    assert sum(sleeps) <= settings.attempts * settings.interval
    out = capsys.readouterr().out
    assert 'Docker startup diagnostics' in out
    assert 'docker.sock: missing' in out
    # later steps still ran
    assert all((settings.home / sub).is_dir() for sub in HOME_SUBDIRS)


def test_direct_tier_success_emits_no_bundle(guest, capsys) -> None:
    settings, calls = guest
    sock = settings.docker_sock

    def direct():
        sock.write_text('')
        return StrategyResult(True, 'dockerd')

    boot = GuestBootstrap(
        settings,
        sleep=lambda s: None,
        network_ready=lambda iface: True,
        engine_alive=lambda: sock.exists(),
        strategies=[
            lambda: StrategyResult(False, 'containerd'),
            lambda: StrategyResult(False, 'docker.service'),
            direct,
        ],
    )
    report = boot.run()
    assert report.engine is EngineState.READY
    assert report.engine_via == 'dockerd'
    assert report.diagnostic == ''
    out = capsys.readouterr().out
    assert 'Docker startup diagnostics' not in out
    assert 'Docker version 27.0.1' in out
    assert ['chown', '-R', '1000:1000', str(settings.home)] in calls


def test_network_timeout_continues(guest) -> None:
    settings, _calls = guest
    sleeps = []
    boot = GuestBootstrap(
        settings,
        sleep=sleeps.append,
        network_ready=lambda iface: False,
        engine_alive=lambda: True,
        strategies=[],
    )
    report = boot.run()
    assert report.network is NetworkState.PENDING
    assert report.engine is EngineState.READY
    assert len(sleeps) == settings.attempts - 1


def test_static_dns_and_storage_driver(guest) -> None:
    settings, _calls = guest
    GuestBootstrap(
        settings,
        sleep=lambda s: None,
        network_ready=lambda iface: True,
        engine_alive=lambda: True,
    ).run()
    assert settings.resolv_conf.read_text() == 'nameserver 8.8.8.8\nnameserver 8.8.4.4\n'
    assert '"storage-driver": "vfs"' in settings.daemon_json.read_text()


def test_dns_delegated_to_systemd_resolved(guest, monkeypatch) -> None:
    settings, calls = guest
    settings.resolv_conf.write_text('nameserver 127.0.0.53\n')
    monkeypatch.setattr(
        'fcvm.guest.engine.service_active', lambda unit: unit == 'systemd-resolved'
    )
    GuestBootstrap(
        settings,
        sleep=lambda s: None,
        network_ready=lambda iface: True,
        engine_alive=lambda: True,
    ).configure_dns()
    assert ['resolvectl', 'dns', 'eth0', '8.8.8.8', '8.8.4.4'] in calls
    assert settings.resolv_conf.read_text() == 'nameserver 127.0.0.53\n'


def test_failing_step_is_tolerated(guest, tmp_path) -> None:
    settings, _calls = guest
    settings.resolv_conf = tmp_path / 'missing-dir' / 'resolv.conf'
    report = GuestBootstrap(
        settings,
        sleep=lambda s: None,
        network_ready=lambda iface: True,
        engine_alive=lambda: True,
    ).run()
    assert report.failed_steps == ['dns']
    assert report.engine is EngineState.READY
    assert settings.daemon_json.exists()


def test_render_unit() -> None:
    text = render_unit('/opt/fcvm/bin/fcvm')
    assert 'Type=oneshot' in text
    assert 'ExecStart=/opt/fcvm/bin/fcvm guest init' in text
    assert 'After=network-online.target docker.service mount-workspace.service' in text
    assert 'StandardOutput=journal+console' in text
