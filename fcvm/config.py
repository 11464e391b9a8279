"""Resolved run configuration: resource profile, network endpoint, and paths.

Values start from built-in defaults, are optionally overlaid by a TOML file
(``FC_CONFIG_FILE``), and finally by ``FC_*`` environment variables.
"""

from __future__ import annotations

import ipaddress
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Mapping

from .errors import PrerequisiteError
from .util import expand

LOG_LEVELS = ('Error', 'Warning', 'Info', 'Debug')
CONSOLE_MODES = ('interactive', 'detached')

DEFAULT_STATE_DIR = '/var/lib/firecracker'


@dataclass(frozen=True)
class VMProfile:
    vcpu_count: int = 2
    memory_mb: int = 2048
    workspace_size_mb: int = 2048
    log_level: str = 'Warning'
    console_mode: str = 'interactive'

    def problems(self) -> list[str]:
        out: list[str] = []
        for name in ('vcpu_count', 'memory_mb', 'workspace_size_mb'):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                out.append(f'{name} must be a positive integer, got {value!r}')
        if self.log_level not in LOG_LEVELS:
            out.append(
                f'log_level must be one of {", ".join(LOG_LEVELS)}, got {self.log_level!r}'
            )
        if self.console_mode not in CONSOLE_MODES:
            out.append(
                f'console_mode must be one of {", ".join(CONSOLE_MODES)}, got {self.console_mode!r}'
            )
        return out


@dataclass(frozen=True)
class NetworkEndpoint:
    tap_device: str = 'tap0'
    tap_ip: str = '172.16.0.1'
    vm_ip: str = '172.16.0.2'
    subnet: str = '172.16.0.0/24'

    @property
    def prefix_len(self) -> int:
        return ipaddress.ip_network(self.subnet, strict=False).prefixlen

    @property
    def netmask(self) -> str:
        return str(ipaddress.ip_network(self.subnet, strict=False).netmask)

    def problems(self) -> list[str]:
        out: list[str] = []
        if not self.tap_device or len(self.tap_device) > 15:
            out.append(
                f'tap_device must be 1..15 characters, got {self.tap_device!r}'
            )
        try:
            net = ipaddress.ip_network(self.subnet, strict=False)
            tap = ipaddress.ip_address(self.tap_ip)
            vm = ipaddress.ip_address(self.vm_ip)
        except ValueError as ex:
            out.append(f'invalid network address: {ex}')
            return out
        if net.prefixlen != 24:
            out.append(f'subnet must be a /24, got {self.subnet}')
        if tap not in net or vm not in net:
            out.append(
                f'tap_ip={self.tap_ip} and vm_ip={self.vm_ip} must lie in subnet {self.subnet}'
            )
        if tap == vm:
            out.append(f'tap_ip and vm_ip must differ, both are {self.tap_ip}')
        return out


@dataclass(frozen=True)
class ArtifactPaths:
    kernel_path: Path
    rootfs_path: Path
    workspace_image_path: Path
    control_socket_path: Path
    rendered_config_path: Path
    vm_log_path: Path
    host_workspace: Path
    state_dir: Path

    def required_dirs(self) -> list[Path]:
        return [
            self.kernel_path.parent,
            self.rootfs_path.parent,
            self.workspace_image_path.parent,
            self.control_socket_path.parent,
        ]


@dataclass
class PathsConfig:
    state_dir: str = DEFAULT_STATE_DIR
    kernel: str = ''
    rootfs: str = ''
    workspace: str = '/workspace'
    config_template: str = ''
    vm_log: str = '/var/log/firecracker.log'


@dataclass
class FCVMConfig:
    vm: VMProfile = field(default_factory=VMProfile)
    network: NetworkEndpoint = field(default_factory=NetworkEndpoint)
    paths: PathsConfig = field(default_factory=PathsConfig)
    verbosity: int = 1

    def artifacts(self) -> ArtifactPaths:
        state = Path(expand(self.paths.state_dir))
        kernel = self.paths.kernel or str(state / 'kernel' / 'vmlinux')
        rootfs = self.paths.rootfs or str(state / 'rootfs' / 'base.ext4')
        return ArtifactPaths(
            kernel_path=Path(expand(kernel)),
            rootfs_path=Path(expand(rootfs)),
            workspace_image_path=state / 'workspace' / 'workspace.ext4',
            control_socket_path=state / 'run' / 'firecracker.socket',
            rendered_config_path=state / 'run' / 'firecracker.json',
            vm_log_path=Path(expand(self.paths.vm_log)),
            host_workspace=Path(expand(self.paths.workspace)),
            state_dir=state,
        )

    def validate(self) -> 'FCVMConfig':
        problems = self.vm.problems() + self.network.problems()
        if problems:
            raise PrerequisiteError(
                'Invalid configuration:\n  ' + '\n  '.join(problems)
            )
        return self

    def detached(self) -> 'FCVMConfig':
        return replace(self, vm=replace(self.vm, console_mode='detached'))


# Environment variable -> (section, attribute, type)
ENV_FIELDS: dict[str, tuple[str, str, type]] = {
    'FC_VCPU': ('vm', 'vcpu_count', int),
    'FC_MEM': ('vm', 'memory_mb', int),
    'FC_WORKSPACE_SIZE': ('vm', 'workspace_size_mb', int),
    'FC_LOG_LEVEL': ('vm', 'log_level', str),
    'FC_CONSOLE_TYPE': ('vm', 'console_mode', str),
    'FC_TAP_DEVICE': ('network', 'tap_device', str),
    'FC_TAP_IP': ('network', 'tap_ip', str),
    'FC_VM_IP': ('network', 'vm_ip', str),
    'FC_SUBNET': ('network', 'subnet', str),
    'FC_STATE_DIR': ('paths', 'state_dir', str),
    'FC_KERNEL': ('paths', 'kernel', str),
    'FC_ROOTFS': ('paths', 'rootfs', str),
    'FC_WORKSPACE': ('paths', 'workspace', str),
    'FC_CONFIG_TEMPLATE': ('paths', 'config_template', str),
    'FC_VM_LOG': ('paths', 'vm_log', str),
}


def _coerce(env_name: str, raw: str, typ: type):
    if typ is int:
        try:
            return int(raw.strip())
        except ValueError as ex:
            raise PrerequisiteError(
                f'{env_name} must be an integer, got {raw!r}'
            ) from ex
    return raw.strip()


def _apply(cfg: FCVMConfig, updates: dict[str, dict[str, object]]) -> FCVMConfig:
    vm_updates = updates.get('vm', {})
    net_updates = updates.get('network', {})
    if vm_updates:
        cfg.vm = replace(cfg.vm, **vm_updates)
    if net_updates:
        cfg.network = replace(cfg.network, **net_updates)
    for k, v in updates.get('paths', {}).items():
        setattr(cfg.paths, k, v)
    return cfg


def _section_names(cls) -> set[str]:
    return {f.name for f in fields(cls)}


def load_toml(path: Path, cfg: FCVMConfig | None = None) -> FCVMConfig:
    raw = tomllib.loads(Path(path).read_text(encoding='utf-8'))
    cfg = cfg if cfg is not None else FCVMConfig()
    updates: dict[str, dict[str, object]] = {}
    for section, cls in (
        ('vm', VMProfile),
        ('network', NetworkEndpoint),
        ('paths', PathsConfig),
    ):
        body = raw.get(section, None)
        if isinstance(body, dict):
            known = _section_names(cls)
            updates[section] = {k: v for k, v in body.items() if k in known}
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return _apply(cfg, updates)


def load_config(
    environ: Mapping[str, str] | None = None,
    *,
    path: Path | None = None,
) -> FCVMConfig:
    """Resolve config from defaults, an optional TOML file, and FC_* vars."""
    environ = os.environ if environ is None else environ
    cfg = FCVMConfig()
    file_path = path
    if file_path is None and environ.get('FC_CONFIG_FILE'):
        file_path = Path(expand(environ['FC_CONFIG_FILE']))
    if file_path is not None:
        cfg = load_toml(file_path, cfg)
    updates: dict[str, dict[str, object]] = {}
    for env_name, (section, attr, typ) in ENV_FIELDS.items():
        raw = environ.get(env_name, None)
        if raw is None or raw == '':
            continue
        updates.setdefault(section, {})[attr] = _coerce(env_name, raw, typ)
    if environ.get('FC_VERBOSITY'):
        cfg.verbosity = int(_coerce('FC_VERBOSITY', environ['FC_VERBOSITY'], int))
    return _apply(cfg, updates)


def dump_env(cfg: FCVMConfig) -> str:
    """Render the resolved configuration as ``FC_*=value`` lines."""
    flat = asdict(cfg)
    art = cfg.artifacts()
    resolved = {
        'paths': {
            'kernel': str(art.kernel_path),
            'rootfs': str(art.rootfs_path),
        }
    }
    lines = ['Firecracker Configuration:']
    for env_name, (section, attr, _typ) in ENV_FIELDS.items():
        value = resolved.get(section, {}).get(attr, flat[section][attr])
        if value == '':
            continue
        lines.append(f'  {env_name}={value}')
    lines.append(f'  FC_SOCKET={art.control_socket_path}')
    lines.append(f'  FC_WORKSPACE_IMAGE={art.workspace_image_path}')
    return '\n'.join(lines) + '\n'
