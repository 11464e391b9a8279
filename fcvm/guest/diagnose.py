"""In-guest Docker troubleshooting report."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..status import clip, indent, status_line
from ..util import run_cmd, tail_lines, which
from .engine import DOCKER_SOCK, DOCKERD_LOG, service_active
from .probe import CGROUP_ROOT, filesystems

NAMESPACES = ('pid', 'net', 'ipc', 'uts', 'mnt', 'user', 'cgroup')


@dataclass
class DiagnosticReport:
    sections: list[tuple[str, list[str]]] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    def section(self, title: str) -> list[str]:
        lines: list[str] = []
        self.sections.append((title, lines))
        return lines

    def render(self) -> str:
        out = [
            '╔════════════════════════════════════════════════════════════════════╗',
            '║           Docker Diagnostics for Firecracker MicroVM               ║',
            '╚════════════════════════════════════════════════════════════════════╝',
        ]
        for title, lines in self.sections:
            out.append('')
            out.append(f'=== {title} ===')
            out.extend(lines)
        return '\n'.join(out)


def _output(cmd: list[str], *, timeout: float | None = 10) -> tuple[bool, str]:
    res = run_cmd(cmd, check=False, capture=True, timeout=timeout)
    return res.code == 0, (res.stdout or res.stderr).strip()


def _process_running(name: str) -> bool:
    if not which('pgrep'):
        return False
    return run_cmd(['pgrep', '-x', name], check=False, capture=True).code == 0


def collect(
    *,
    proc_root: Path = Path('/proc'),
    cgroup_root: Path = CGROUP_ROOT,
    resolv_conf: Path = Path('/etc/resolv.conf'),
    socket_path: Path = DOCKER_SOCK,
    log_path: Path = DOCKERD_LOG,
) -> DiagnosticReport:
    report = DiagnosticReport()

    lines = report.section('Kernel Version')
    lines.append(_output(['uname', '-a'])[1] or '(unknown)')

    lines = report.section('Cgroups')
    if cgroup_root.is_dir():
        lines.append(status_line(True, f'{cgroup_root} exists'))
        controllers = cgroup_root / 'cgroup.controllers'
        if controllers.exists():
            lines.append(status_line(True, 'Cgroup v2 (unified hierarchy)'))
            text = controllers.read_text(encoding='utf-8').strip()
            lines.append(f'  Controllers: {text}')
        else:
            lines.append(status_line(None, 'Cgroup v1 (legacy hierarchy)'))
            _, mounts = _output(['mount', '-t', 'cgroup'])
            if mounts:
                lines.append(indent(mounts.splitlines(), '    '))
    else:
        lines.append(status_line(False, f'{cgroup_root} does not exist'))

    lines = report.section('Namespaces')
    for ns in NAMESPACES:
        present = (proc_root / 'self' / 'ns' / ns).exists()
        lines.append(status_line(present, f'{ns} namespace'))

    fs = filesystems(proc_root)
    overlay = 'overlay' in fs
    lines = report.section('Filesystems')
    lines.append(
        status_line(
            overlay, 'overlay filesystem', '' if overlay else 'Docker will use vfs'
        )
    )
    lines.append(status_line('tmpfs' in fs, 'tmpfs'))

    lines = report.section('Netfilter/iptables')
    ok, version = _output(['iptables', '--version'])
    lines.append(f'iptables: {version if ok else "not found"}')
    tables = proc_root / 'net' / 'ip_tables_names'
    if tables.exists():
        names = ' '.join(tables.read_text(encoding='utf-8').split())
        lines.append(status_line(True, 'iptables (legacy) supported', names))
    elif (proc_root / 'sys' / 'net' / 'netfilter').is_dir():
        lines.append(status_line(None, 'nftables might be available'))
    else:
        lines.append(status_line(False, 'No netfilter support detected'))
    iptables_ok, nat = _output(['iptables', '-t', 'nat', '-L', '-n'])
    lines.append(status_line(iptables_ok, 'iptables nat table', '' if iptables_ok else nat))

    lines = report.section('Network')
    _, addrs = _output(['ip', '-4', 'addr', 'show'])
    lines.append('Interfaces:')
    lines.append(indent(addrs.splitlines() or ['(none)'], '  '))
    _, route = _output(['ip', 'route', 'show', 'default'])
    lines.append(f'Default route: {route or "none"}')
    try:
        dns = [
            ln
            for ln in resolv_conf.read_text(encoding='utf-8').splitlines()
            if ln.strip() and not ln.startswith('#')
        ]
    except OSError:
        dns = []
    lines.append('DNS:')
    lines.append(indent(dns or ['(no resolv.conf)'], '  '))
    lines.append(
        status_line(_output(['ping', '-c', '1', '-W', '2', '8.8.8.8'])[0], 'Reach 8.8.8.8')
    )
    lines.append(
        status_line(
            _output(['ping', '-c', '1', '-W', '2', 'google.com'])[0], 'DNS resolution'
        )
    )

    lines = report.section('Docker Status')
    containerd = service_active('containerd') or _process_running('containerd')
    dockerd = service_active('docker') or _process_running('dockerd')
    lines.append(status_line(containerd, 'containerd'))
    lines.append(status_line(dockerd, 'docker'))
    lines.append(status_line(socket_path.exists(), 'Docker socket', str(socket_path)))

    lines = report.section('Docker Info')
    docker_ok, info = _output(['docker', 'info'], timeout=15)
    if docker_ok:
        lines.append(clip(info))
        lines.append(status_line(True, 'Docker is fully operational'))
    else:
        lines.append(status_line(False, 'Docker is not responding'))
        logs = tail_lines(log_path, 30)
        if not logs:
            _, journal = _output(['journalctl', '-u', 'docker', '--no-pager', '-n', '30'])
            logs = journal.splitlines()
        lines.append('Daemon logs:')
        lines.append(indent(logs or ['(no logs available)'], '  '))

    lines = report.section('Summary')
    if docker_ok:
        lines.append(status_line(True, 'Docker is operational'))
        return report
    report.issues.append('Docker is NOT running')
    if not overlay:
        report.issues.append('Kernel missing overlay filesystem support')
    if not iptables_ok:
        report.issues.append('Kernel missing iptables/netfilter support')
    if not cgroup_root.is_dir():
        report.issues.append('Cgroups not mounted')
    lines.append(status_line(False, report.issues[0]))
    lines.extend(f'  -> {issue}' for issue in report.issues[1:])
    lines.extend([
        '',
        'Suggested fixes:',
        '  1. Rebuild the guest kernel with overlay, netfilter and cgroup support',
        '  2. Try: systemctl restart docker',
        '  3. Check: journalctl -xe -u docker',
    ])
    return report
