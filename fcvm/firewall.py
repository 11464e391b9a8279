"""Idempotent iptables rule installation for VM NAT and tap traffic."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from .config import NetworkEndpoint
from .util import run_cmd

log = logger


@dataclass(frozen=True)
class Rule:
    chain: str
    spec: tuple[str, ...]
    table: str = 'filter'

    def _base(self) -> list[str]:
        cmd = ['iptables']
        if self.table != 'filter':
            cmd.extend(['-t', self.table])
        return cmd

    def check_cmd(self) -> list[str]:
        return [*self._base(), '-C', self.chain, *self.spec]

    def append_cmd(self) -> list[str]:
        return [*self._base(), '-A', self.chain, *self.spec]


def ensure_rule(rule: Rule, *, dry_run: bool = False) -> bool:
    """Append ``rule`` unless an identical rule already exists.

    Returns:
        bool: True if the rule was appended, False if it was already present.
    """
    if run_cmd(rule.check_cmd(), check=False, capture=True).code == 0:
        log.debug('iptables rule present: {} {}', rule.chain, ' '.join(rule.spec))
        return False
    if dry_run:
        log.info('DRYRUN: {}', ' '.join(rule.append_cmd()))
        return True
    run_cmd(rule.append_cmd(), check=True, capture=True)
    return True


def nat_rules(endpoint: NetworkEndpoint, uplink: str) -> list[Rule]:
    tap = endpoint.tap_device
    return [
        Rule('POSTROUTING', ('-o', uplink, '-j', 'MASQUERADE'), table='nat'),
        Rule('FORWARD', ('-i', tap, '-o', uplink, '-j', 'ACCEPT')),
        Rule(
            'FORWARD',
            (
                '-i',
                uplink,
                '-o',
                tap,
                '-m',
                'state',
                '--state',
                'RELATED,ESTABLISHED',
                '-j',
                'ACCEPT',
            ),
        ),
    ]


def tap_rules(endpoint: NetworkEndpoint) -> list[Rule]:
    tap = endpoint.tap_device
    return [
        Rule('INPUT', ('-i', tap, '-j', 'ACCEPT')),
        Rule('OUTPUT', ('-o', tap, '-j', 'ACCEPT')),
    ]


def apply_firewall(
    endpoint: NetworkEndpoint, uplink: str | None, *, dry_run: bool = False
) -> list[Rule]:
    """Install NAT rules (when an uplink is known) and tap accept rules."""
    rules: list[Rule] = []
    if uplink:
        rules.extend(nat_rules(endpoint, uplink))
    else:
        log.info('No default route interface; skipping NAT rules.')
    rules.extend(tap_rules(endpoint))
    added = [r for r in rules if ensure_rule(r, dry_run=dry_run)]
    log.debug('iptables rules added={} total={}', len(added), len(rules))
    return added


def firewall_status() -> str:
    nat = run_cmd(
        ['iptables', '-t', 'nat', '-S'], check=False, capture=True
    )
    filt = run_cmd(['iptables', '-S'], check=False, capture=True)
    return (nat.stdout + (nat.stderr or '')) + '\n' + (filt.stdout + (filt.stderr or ''))
