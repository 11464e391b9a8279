"""Commands that run inside the microVM."""

from __future__ import annotations

import scriptconfig as scfg

from ..guest.bootstrap import (
    GuestBootstrap,
    GuestSettings,
    render_unit,
    running_as_root,
)
from ..guest.diagnose import collect
from ._common import _BaseCommand, log


class GuestInitCLI(_BaseCommand):
    """Bring up networking, cgroups and Docker inside the guest (run once at boot)."""

    attempts = scfg.Value(30, help='Max poll attempts for each wait.')
    interval = scfg.Value(1.0, help='Seconds between poll attempts.')
    interface = scfg.Value('eth0', help='Primary guest network interface.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not running_as_root():
            log.warning('guest init is not running as root; most steps will fail')
        settings = GuestSettings(
            interface=str(args.interface),
            attempts=int(args.attempts),
            interval=float(args.interval),
        )
        GuestBootstrap(settings).run()
        return 0


class GuestDiagnoseCLI(_BaseCommand):
    """Print a Docker troubleshooting report; exit code is the issue count."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        report = collect()
        print(report.render())
        return len(report.issues)


class GuestUnitCLI(_BaseCommand):
    """Print the systemd unit that runs guest init at boot."""

    exe = scfg.Value('/usr/local/bin/fcvm', help='Path to fcvm inside the guest.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(render_unit(str(args.exe)), end='')
        return 0


class GuestModalCLI(scfg.ModalCLI):
    """Guest-side bootstrap and diagnostics."""

    init = GuestInitCLI
    diagnose = GuestDiagnoseCLI
    unit = GuestUnitCLI
