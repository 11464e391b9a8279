"""Firecracker configuration document rendering."""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .config import ArtifactPaths, FCVMConfig

log = logger

# Kept as the documented format contract for operator-supplied templates.
DEFAULT_TEMPLATE = """{
  "boot-source": {
    "kernel_image_path": "__KERNEL__",
    "boot_args": "console=ttyS0 reboot=k panic=1 pci=off ip=__VM_IP__::__TAP_IP__:255.255.255.0::eth0:off"
  },
  "drives": [
    {
      "drive_id": "rootfs",
      "path_on_host": "__ROOTFS__",
      "is_root_device": true,
      "is_read_only": false
    },
    {
      "drive_id": "workspace",
      "path_on_host": "__WORKSPACE__",
      "is_root_device": false,
      "is_read_only": false
    }
  ],
  "machine-config": {
    "vcpu_count": __VCPU__,
    "mem_size_mib": __MEM__
  },
  "network-interfaces": [
    {
      "iface_id": "eth0",
      "guest_mac": "06:00:AC:10:00:02",
      "host_dev_name": "__TAP__"
    }
  ]
}
"""

BOOT_ARGS = 'console=ttyS0 reboot=k panic=1 pci=off'


@dataclass(frozen=True)
class VMConfigParams:
    kernel: str
    rootfs: str
    workspace: str
    vcpu_count: int
    memory_mb: int
    tap_device: str
    vm_ip: str
    tap_ip: str
    netmask: str = '255.255.255.0'

    @classmethod
    def from_config(cls, cfg: FCVMConfig, art: ArtifactPaths) -> 'VMConfigParams':
        return cls(
            kernel=str(art.kernel_path),
            rootfs=str(art.rootfs_path),
            workspace=str(art.workspace_image_path),
            vcpu_count=cfg.vm.vcpu_count,
            memory_mb=cfg.vm.memory_mb,
            tap_device=cfg.network.tap_device,
            vm_ip=cfg.network.vm_ip,
            tap_ip=cfg.network.tap_ip,
            netmask=cfg.network.netmask,
        )

    def placeholders(self) -> dict[str, str]:
        def _str(value: str) -> str:
            # Escape for a JSON string context; quotes stay in the template.
            return json.dumps(value)[1:-1]

        return {
            '__KERNEL__': _str(self.kernel),
            '__ROOTFS__': _str(self.rootfs),
            '__WORKSPACE__': _str(self.workspace),
            '__VCPU__': str(int(self.vcpu_count)),
            '__MEM__': str(int(self.memory_mb)),
            '__TAP__': _str(self.tap_device),
            '__VM_IP__': _str(self.vm_ip),
            '__TAP_IP__': _str(self.tap_ip),
        }


def guest_mac(tap_device: str, vm_ip: str) -> str:
    """Deterministic locally administered MAC for the guest interface."""
    digest = hashlib.sha256(f'{tap_device}/{vm_ip}'.encode('utf-8')).digest()
    octets = [0x06, *digest[:5]]
    return ':'.join(f'{b:02X}' for b in octets)


def build_vm_config(params: VMConfigParams) -> dict:
    boot_args = (
        f'{BOOT_ARGS} ip={params.vm_ip}::{params.tap_ip}:{params.netmask}::eth0:off'
    )
    return {
        'boot-source': {
            'kernel_image_path': params.kernel,
            'boot_args': boot_args,
        },
        'drives': [
            {
                'drive_id': 'rootfs',
                'path_on_host': params.rootfs,
                'is_root_device': True,
                'is_read_only': False,
            },
            {
                'drive_id': 'workspace',
                'path_on_host': params.workspace,
                'is_root_device': False,
                'is_read_only': False,
            },
        ],
        'machine-config': {
            'vcpu_count': int(params.vcpu_count),
            'mem_size_mib': int(params.memory_mb),
        },
        'network-interfaces': [
            {
                'iface_id': 'eth0',
                'guest_mac': guest_mac(params.tap_device, params.vm_ip),
                'host_dev_name': params.tap_device,
            }
        ],
    }


def render(template: str, params: VMConfigParams) -> str:
    """Substitute the named placeholders into ``template``; no other checks."""
    text = template
    for token, value in params.placeholders().items():
        text = text.replace(token, value)
    return text


def write_vm_config(text: str, path: Path) -> Path:
    """Replace any previous config artifact at ``path`` with ``text``."""
    path = Path(path)
    path.unlink(missing_ok=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.part')
    tmp.write_text(text, encoding='utf-8')
    os.replace(tmp, path)
    return path


def render_vm_config(cfg: FCVMConfig, art: ArtifactPaths) -> Path:
    """Render the VM config for this run and write it to its artifact path."""
    art.rendered_config_path.unlink(missing_ok=True)
    params = VMConfigParams.from_config(cfg, art)
    template_path = cfg.paths.config_template
    if template_path:
        log.info('Rendering Firecracker config from template {}', template_path)
        text = render(Path(template_path).read_text(encoding='utf-8'), params)
    else:
        text = json.dumps(build_vm_config(params), indent=2) + '\n'
    out = write_vm_config(text, art.rendered_config_path)
    log.info(
        'Config generated: {} (vCPU: {}, RAM: {}MB)',
        out,
        params.vcpu_count,
        params.memory_mb,
    )
    return out
