"""Tap device plumbing so the microVM can reach the host's default route."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from .config import NetworkEndpoint
from .firewall import Rule, apply_firewall
from .util import run_cmd

log = logger

TUN_PATH = Path('/dev/net/tun')


@dataclass
class NetworkReport:
    tap_device: str
    tap_ip: str
    vm_ip: str
    uplink: str | None = None
    rules_added: list[Rule] = field(default_factory=list)

    @property
    def nat_via(self) -> str:
        return self.uplink or 'none'

    def summary(self) -> str:
        return (
            f'TAP device {self.tap_device} configured\n'
            f'  TAP IP: {self.tap_ip}\n'
            f'  VM IP:  {self.vm_ip}\n'
            f'  NAT:    via {self.nat_via}'
        )


def ensure_tun_device(path: Path = TUN_PATH, *, dry_run: bool = False) -> None:
    if path.exists():
        return
    if dry_run:
        log.info('DRYRUN: mknod {} c 10 200', path)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    os.mknod(str(path), stat.S_IFCHR | 0o600, os.makedev(10, 200))
    os.chmod(str(path), 0o600)
    log.info('Created tun device node {}', path)


def tap_exists(name: str) -> bool:
    return run_cmd(['ip', 'link', 'show', name], check=False, capture=True).code == 0


def _has_address(endpoint: NetworkEndpoint) -> bool:
    res = run_cmd(
        ['ip', '-4', 'addr', 'show', 'dev', endpoint.tap_device],
        check=False,
        capture=True,
    )
    want = f'{endpoint.tap_ip}/{endpoint.prefix_len}'
    return any(want in line.split() for line in res.stdout.splitlines())


def default_route_iface() -> str | None:
    res = run_cmd(
        ['ip', '-4', 'route', 'show', 'default'], check=False, capture=True
    )
    if res.code != 0:
        return None
    for line in res.stdout.splitlines():
        parts = line.split()
        if 'dev' in parts:
            idx = parts.index('dev')
            if idx + 1 < len(parts):
                return parts[idx + 1]
    return None


def _enable_ip_forward(*, dry_run: bool = False) -> None:
    if dry_run:
        log.info('DRYRUN: sysctl -w net.ipv4.ip_forward=1')
        return
    res = run_cmd(
        ['sysctl', '-w', 'net.ipv4.ip_forward=1'], check=False, capture=True
    )
    if res.code != 0:
        log.warning(
            'Could not enable IP forwarding (continuing): {}',
            (res.stderr or res.stdout).strip(),
        )


def ensure_network(
    endpoint: NetworkEndpoint, *, dry_run: bool = False
) -> NetworkReport:
    """Create and configure the tap device and NAT path, idempotently."""
    tap = endpoint.tap_device
    log.debug('Ensuring tap network {} ({})', tap, endpoint.subnet)
    ensure_tun_device(dry_run=dry_run)

    if tap_exists(tap):
        log.debug('Tap device exists: {}', tap)
    elif dry_run:
        log.info('DRYRUN: ip tuntap add dev {} mode tap', tap)
    else:
        run_cmd(['ip', 'tuntap', 'add', 'dev', tap, 'mode', 'tap'], check=True)

    cidr = f'{endpoint.tap_ip}/{endpoint.prefix_len}'
    if _has_address(endpoint):
        log.debug('Tap address already assigned: {}', cidr)
    elif dry_run:
        log.info('DRYRUN: ip addr add {} dev {}', cidr, tap)
    else:
        res = run_cmd(
            ['ip', 'addr', 'add', cidr, 'dev', tap], check=False, capture=True
        )
        if res.code != 0 and 'exists' not in (res.stderr or '').lower():
            log.warning(
                'Assigning {} to {} failed: {}', cidr, tap, res.stderr.strip()
            )

    if dry_run:
        log.info('DRYRUN: ip link set {} up', tap)
    else:
        run_cmd(['ip', 'link', 'set', tap, 'up'], check=True)

    _enable_ip_forward(dry_run=dry_run)
    uplink = default_route_iface()
    added = apply_firewall(endpoint, uplink, dry_run=dry_run)
    report = NetworkReport(
        tap_device=tap,
        tap_ip=endpoint.tap_ip,
        vm_ip=endpoint.vm_ip,
        uplink=uplink,
        rules_added=added,
    )
    log.info('Network ready: tap={} vm={} nat via {}', tap, endpoint.vm_ip, report.nat_via)
    return report


def destroy_network(endpoint: NetworkEndpoint, *, dry_run: bool = False) -> None:
    tap = endpoint.tap_device
    if dry_run:
        log.info('DRYRUN: ip link delete {}', tap)
        return
    run_cmd(['ip', 'link', 'delete', tap], check=False, capture=True)
    log.debug('Tap device removed: {}', tap)


def network_status(endpoint: NetworkEndpoint) -> str:
    link = run_cmd(
        ['ip', 'addr', 'show', 'dev', endpoint.tap_device],
        check=False,
        capture=True,
    )
    route = run_cmd(['ip', 'route', 'show'], check=False, capture=True)
    return link.stdout + (link.stderr or '') + '\n' + route.stdout
