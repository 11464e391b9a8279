"""Usage text and the help command."""

from __future__ import annotations

import textwrap

import ubelt as ub

from ._common import _BaseCommand

USAGE = textwrap.dedent(
    """
    Firecracker MicroVM Manager

    Usage: fcvm [command] [options]

    Commands:
      start         Start the MicroVM (default)
      shell         Start with interactive shell access
      detach        Start in detached mode
      config        Show current configuration
      doctor        Check host prerequisites
      guest         Guest-side commands (init, diagnose, unit)
      help          Show this help

    Environment Variables:
      FC_VCPU            Number of vCPUs (default: 2)
      FC_MEM             Memory in MB (default: 2048)
      FC_KERNEL          Kernel image path
      FC_ROOTFS          Root filesystem path
      FC_WORKSPACE_SIZE  Workspace image size in MB (default: 2048)
      FC_TAP_DEVICE      TAP device name (default: tap0)
      FC_TAP_IP          Host TAP IP (default: 172.16.0.1)
      FC_VM_IP           VM IP address (default: 172.16.0.2)
      FC_SUBNET          Network subnet (default: 172.16.0.0/24)
      FC_LOG_LEVEL       Firecracker log level (default: Warning)
      FC_CONSOLE_TYPE    interactive or detached (default: interactive)
      FC_STATE_DIR       State directory (default: /var/lib/firecracker)
      FC_WORKSPACE       Host workspace directory (default: /workspace)
      FC_CONFIG_TEMPLATE Optional text template for the VM config
      FC_CONFIG_FILE     Optional TOML defaults file
      FC_VERBOSITY       0=warning, 1=info, 2=debug (default: 1)
    """
).strip()

EXAMPLES = textwrap.dedent(
    """
    # Interactive session with 4 vCPUs and 4GB of memory
    FC_VCPU=4 FC_MEM=4096 fcvm start

    # Background VM, console output goes to the VM log
    fcvm detach

    # Inspect resolved settings without side effects
    fcvm config
    """
).strip()


class HelpCLI(_BaseCommand):
    """Show usage, commands and environment variables."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        print(USAGE)
        print('')
        print('Examples:')
        print(ub.highlight_code(EXAMPLES, lexer_name='bash'))
        return 0
