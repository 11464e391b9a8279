"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import sys

import scriptconfig as scfg

from ..config import dump_env, load_config
from ..errors import PrerequisiteError
from ..firewall import firewall_status
from ..host import KVM_PATH, check_commands, check_kvm
from ..net import network_status
from ..orchestrator import Orchestrator
from ..resource_checks import vm_resource_warning_lines
from ..status import clip, status_line
from ._common import _BaseCommand, _count_verbose, _load_cfg, _setup_logging, log
from .guest import GuestModalCLI
from .help import USAGE, HelpCLI

COMMANDS = ('start', 'shell', 'detach', 'config', 'doctor', 'guest', 'help')


class StartCLI(_BaseCommand):
    """Start the MicroVM with the console attached to this terminal."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        return Orchestrator(cfg).run()


class DetachCLI(_BaseCommand):
    """Start the MicroVM in the background and wait for it to exit."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config).detached()
        return Orchestrator(cfg).run()


class ConfigCLI(_BaseCommand):
    """Print the resolved configuration."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(dump_env(_load_cfg(args.config)), end='')
        return 0


class DoctorCLI(_BaseCommand):
    """Check host tools, the KVM device, artifacts and resource headroom."""

    detail = scfg.Value(
        False,
        isflag=True,
        help='Include current tap device and iptables state.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        art = cfg.artifacts()
        missing, missing_opt = check_commands()
        lines = ['🔎 Host prerequisites']
        lines.append(
            status_line(
                not missing,
                'Required commands',
                f'missing: {", ".join(missing)}' if missing else 'all present',
            )
        )
        lines.append(
            status_line(
                None if missing_opt else True,
                'Optional commands',
                f'missing: {", ".join(missing_opt)}' if missing_opt else 'all present',
            )
        )
        kvm_ok = True
        try:
            check_kvm()
        except PrerequisiteError as ex:
            kvm_ok = False
            lines.append(status_line(False, str(KVM_PATH), str(ex).splitlines()[0]))
        else:
            lines.append(status_line(True, str(KVM_PATH), 'read/write'))
        kernel_ok = art.kernel_path.is_file()
        rootfs_ok = art.rootfs_path.is_file()
        lines.append(status_line(kernel_ok, 'Kernel', str(art.kernel_path)))
        lines.append(status_line(rootfs_ok, 'Rootfs', str(art.rootfs_path)))
        warnings = vm_resource_warning_lines(cfg)
        lines.append(
            status_line(
                None if warnings else True,
                'Resources',
                '; '.join(warnings) if warnings else 'within host capacity',
            )
        )
        if args.detail:
            lines.append('')
            lines.append(f'Tap device {cfg.network.tap_device}:')
            lines.append(clip(network_status(cfg.network)))
            lines.append('')
            lines.append('iptables:')
            lines.append(clip(firewall_status()))
        print('\n'.join(lines))
        ok = not missing and kvm_ok and kernel_ok and rootfs_ok
        return 0 if ok else 1


class FCVMModalCLI(scfg.ModalCLI):
    """Firecracker microVM lifecycle manager."""

    start = StartCLI
    detach = DetachCLI
    config = ConfigCLI
    doctor = DoctorCLI
    guest = GuestModalCLI
    help = HelpCLI


def _normalize_argv(argv: list[str]) -> list[str] | None:
    """Map aliases and the default command; ``None`` means unknown command."""
    if not argv or (argv[0].startswith('-') and argv[0] not in ('-h', '--help')):
        return ['start', *argv]
    head = argv[0]
    if head in ('-h', '--help'):
        return ['help', *argv[1:]]
    if head == 'shell':
        return ['start', *argv[1:]]
    if head not in COMMANDS:
        return None
    return argv


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    normalized = _normalize_argv(list(argv))
    if normalized is None:
        print(f'ERROR: Unknown command: {argv[0]}', file=sys.stderr)
        print(USAGE, file=sys.stderr)
        sys.exit(1)
    argv = normalized

    try:
        verbosity = load_config().verbosity
    except Exception:
        verbosity = 1
    _setup_logging(_count_verbose(argv), verbosity)

    try:
        rc = FCVMModalCLI.main(argv=argv, _noexit=True)
    except PrerequisiteError as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Prerequisite check failed: {}', ex)
        sys.exit(1)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled fcvm error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)
