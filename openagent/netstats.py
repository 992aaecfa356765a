"""Socket tables: which process owns a connection, and which ports serve traffic."""

from __future__ import annotations

import enum
import logging
import os
import re
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

import psutil

log = logging.getLogger(__name__)

_ANY_ADDRESSES = ("0.0.0.0", "::")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_HEX_RE = re.compile(r"[+-]?[0-9A-Fa-f]+")
_DEC_RE = re.compile(r"[+-]?[0-9]+")
_COMMAND_TIMEOUT = 5.0

EstablishKey = Tuple[str, str, int]
ListenKey = Tuple[str, int]
Lines = Union[str, Iterable[str]]


class SocketState(enum.IntEnum):
    """Socket states as numbered in the kernel's /proc/net tables."""

    ESTABLISHED = 0x01
    SYN_SENT = 0x02
    SYN_RECV = 0x03
    FIN_WAIT1 = 0x04
    FIN_WAIT2 = 0x05
    TIME_WAIT = 0x06
    CLOSE = 0x07
    CLOSE_WAIT = 0x08
    LAST_ACK = 0x09
    LISTEN = 0x0A
    CLOSING = 0x0B


class PortSet(dict):
    """Port to state mapping in which a listening state is never overwritten."""

    def add(self, port: int, state: SocketState) -> None:
        old = self.get(port)
        if old is None or old != SocketState.LISTEN:
            self[port] = state


def _atoi(text: str) -> int:
    """Parse a decimal integer, returning 0 for anything unparsable."""
    if _DEC_RE.fullmatch(text):
        return int(text)
    return 0


def _parse_hex(text: str) -> int:
    if not _HEX_RE.fullmatch(text):
        raise ValueError(f"invalid hex number: {text!r}")
    value = int(text, 16)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"hex number out of range: {text!r}")
    return value


def _as_lines(lines: Lines) -> Iterable[str]:
    if isinstance(lines, str):
        return lines.splitlines()
    return lines


def convert_addr(text: str) -> Tuple[str, int]:
    """Split ``ip:port`` into address and port.

    Brackets and a ``%zone`` suffix are removed from the address. Without a
    colon the result is ``("", -1)``; an unparsable port reads as 0.
    """
    index = text.rfind(":")
    if index == -1:
        return "", -1
    ip = text[:index].strip("[]").split("%")[0]
    return ip, _atoi(text[index + 1:])


def parse_proc_net_tcp(lines: Lines) -> Tuple[List[int], List[int]]:
    """Return the listening and established local ports of a /proc/net/tcp table."""
    listen_ports: List[int] = []
    established_ports: List[int] = []
    for line in _as_lines(lines):
        fields = line.split()
        if len(fields) < 4 or fields[0] == "sl":
            continue
        state = fields[3]
        if state not in ("0A", "01"):
            continue
        parts = fields[1].split(":")
        if len(parts) < 2:
            continue
        try:
            port = _parse_hex(parts[1])
        except ValueError:
            continue
        if state == "0A":
            listen_ports.append(port)
        else:
            established_ports.append(port)
    return listen_ports, established_ports


def parse_proc_net_udp(lines: Lines) -> List[int]:
    """Return the local ports of unconnected sockets in a /proc/net/udp table."""
    ports: List[int] = []
    for line in _as_lines(lines):
        fields = line.split()
        if len(fields) < 3 or fields[0] == "sl":
            continue
        parts = fields[2].split(":")
        if len(parts) < 2:
            continue
        try:
            foreign_ip = _parse_hex(parts[0])
            foreign_port = _parse_hex(parts[1])
        except ValueError:
            continue
        if foreign_ip != 0 or foreign_port != 0:
            continue
        local_parts = fields[1].split(":")
        if len(local_parts) < 2:
            continue
        try:
            ports.append(_parse_hex(local_parts[1]))
        except ValueError:
            continue
    return ports


@dataclass
class ConnectionTable:
    """A snapshot of sockets and the processes that own them."""

    tcp_established: Dict[EstablishKey, int] = field(default_factory=dict)
    tcp_listen: Dict[ListenKey, int] = field(default_factory=dict)
    udp_established: Dict[EstablishKey, int] = field(default_factory=dict)
    udp_listen: Dict[ListenKey, int] = field(default_factory=dict)
    local_ips: Set[str] = field(default_factory=set)
    listen_ports: Set[int] = field(default_factory=set)

    def _add_established(self, table: Dict[EstablishKey, int], local_ip: str,
                         foreign_ip: str, foreign_port: int, pid: int) -> None:
        table[(local_ip, foreign_ip, foreign_port)] = pid
        self.local_ips.add(local_ip)

    def _add_listen(self, table: Dict[ListenKey, int], ip: str, port: int, pid: int) -> None:
        table[(ip, port)] = pid
        self.local_ips.add(ip)
        self.listen_ports.add(port)

    @classmethod
    def from_system(cls) -> "ConnectionTable":
        """Read the current socket table and local addresses of this host."""
        if os.name == "nt":
            table = cls()
            try:
                result = subprocess.run(["netstat", "-ano"], capture_output=True,
                                        text=True, check=True)
            except (OSError, subprocess.CalledProcessError) as exc:
                log.error("netstat failed: %s", exc)
            else:
                table = parse_windows_netstat(result.stdout)
        else:
            table = cls()
            table._load_tcp()
            table._load_udp()
        table._load_local_ips()
        return table

    def _load_tcp(self) -> None:
        for conn in psutil.net_connections("tcp"):
            pid = conn.pid or 0
            if conn.status in (psutil.CONN_ESTABLISHED, psutil.CONN_CLOSE_WAIT):
                raddr = conn.raddr
                self._add_established(self.tcp_established, conn.laddr.ip,
                                      raddr.ip if raddr else "",
                                      raddr.port if raddr else 0, pid)
            elif conn.status == psutil.CONN_LISTEN:
                self._add_listen(self.tcp_listen, conn.laddr.ip, conn.laddr.port, pid)

    def _load_udp(self) -> None:
        for conn in psutil.net_connections("udp"):
            pid = conn.pid or 0
            raddr = conn.raddr
            if raddr and raddr.port != 0:
                self._add_established(self.udp_established, conn.laddr.ip,
                                      raddr.ip, raddr.port, pid)
            else:
                self._add_listen(self.udp_listen, conn.laddr.ip, conn.laddr.port, pid)

    def _load_local_ips(self) -> None:
        for addresses in psutil.net_if_addrs().values():
            for addr in addresses:
                if addr.family in (socket.AF_INET, socket.AF_INET6):
                    self.local_ips.add(addr.address.split("/")[0].split("%")[0])

    @staticmethod
    def _lookup_establish(table: Dict[EstablishKey, int], local_ip: str,
                          foreign_ip: str, foreign_port: int) -> int:
        for ip in (local_ip, *_ANY_ADDRESSES):
            pid = table.get((ip, foreign_ip, foreign_port))
            if pid is not None:
                return pid
        return -1

    @staticmethod
    def _lookup_listen(table: Dict[ListenKey, int], ip: str, port: int) -> int:
        for candidate in (ip, *_ANY_ADDRESSES):
            pid = table.get((candidate, port))
            if pid is not None:
                return pid
        return -1

    def tcp_listen_check(self, ip: str, port: int) -> int:
        """Return the pid listening on ip:port (or a wildcard address), else -1."""
        return self._lookup_listen(self.tcp_listen, ip, port)

    def tcp_establish_check(self, local_ip: str, foreign_ip: str, foreign_port: int) -> int:
        """Return the pid owning the TCP connection, else -1."""
        return self._lookup_establish(self.tcp_established, local_ip, foreign_ip, foreign_port)

    def udp_listen_check(self, ip: str, port: int) -> int:
        """Return the pid bound to UDP ip:port (or a wildcard address), else -1."""
        return self._lookup_listen(self.udp_listen, ip, port)

    def udp_establish_check(self, local_ip: str, foreign_ip: str, foreign_port: int) -> int:
        """Return the pid owning the connected UDP socket, else -1."""
        return self._lookup_establish(self.udp_established, local_ip, foreign_ip, foreign_port)

    def is_local_ip(self, ip: str) -> bool:
        return ip in self.local_ips

    def is_listen_port(self, port: int) -> bool:
        return port in self.listen_ports


def parse_windows_netstat(text: str) -> ConnectionTable:
    """Build a connection table from the output of ``netstat -ano``."""
    table = ConnectionTable()
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        local_ip, local_port = convert_addr(fields[1])
        if local_port == -1:
            continue
        foreign_ip, foreign_port = convert_addr(fields[2])
        if foreign_port == -1:
            continue
        protocol = fields[0]
        if protocol == "TCP":
            if len(fields) < 5:
                continue
            state = fields[3]
            pid = _atoi(fields[4])
            if pid == 0:
                continue
            if state in ("LISTENING", "LISTEN"):
                table._add_listen(table.tcp_listen, local_ip, local_port, pid)
            else:
                table._add_established(table.tcp_established, local_ip,
                                       foreign_ip, foreign_port, pid)
        elif protocol == "UDP":
            pid = _atoi(fields[3])
            if foreign_port != 0:
                table._add_established(table.udp_established, local_ip,
                                       foreign_ip, foreign_port, pid)
            else:
                table._add_listen(table.udp_listen, local_ip, local_port, pid)
    return table


class Netstats:
    """Holds the current connection table and answers lookups against it."""

    def __init__(self, loader: Optional[Callable[[], ConnectionTable]] = None) -> None:
        self._loader = loader or ConnectionTable.from_system
        self.table = self._loader()

    def reload(self) -> None:
        """Replace the table with a fresh snapshot."""
        self.table = self._loader()

    def direction(self, local_port: int) -> str:
        """Return "IN" when the local port is a listening port, else "OUT"."""
        listen_ports = self.table.listen_ports
        if local_port in listen_ports:
            return "IN"
        return "OUT"

    def is_listen_port(self, port: int) -> bool:
        return self.table.is_listen_port(port)

    def is_local_ip(self, ip: str) -> bool:
        return self.table.is_local_ip(ip)

    def search_process(self, local_ip: str, foreign_ip: str, local_port: int,
                       foreign_port: int, protocol: str) -> int:
        """Return the pid owning a flow: -1 if unknown, 0 for other protocols."""
        table = self.table
        if protocol == "TCP":
            pid = table.tcp_listen_check(local_ip, local_port)
            if pid == -1:
                pid = table.tcp_establish_check(local_ip, foreign_ip, foreign_port)
            return pid
        if protocol == "UDP":
            pid = table.udp_listen_check(local_ip, local_port)
            if pid == -1:
                pid = table.udp_establish_check(local_ip, foreign_ip, foreign_port)
            return pid
        return 0


def _host_port_scan(tcp: PortSet, udp: PortSet) -> None:
    wanted = {psutil.CONN_LISTEN: SocketState.LISTEN,
              psutil.CONN_ESTABLISHED: SocketState.ESTABLISHED}
    try:
        for conn in psutil.net_connections("tcp"):
            state = wanted.get(conn.status)
            if state is not None:
                tcp.add(conn.laddr.port, state)
    except (psutil.Error, OSError) as exc:
        log.debug("tcp socket scan failed: %s", exc)
    try:
        for conn in psutil.net_connections("udp"):
            if conn.raddr:
                udp.add(conn.laddr.port, SocketState.ESTABLISHED)
    except (psutil.Error, OSError) as exc:
        log.debug("udp socket scan failed: %s", exc)


def _run(args: List[str]) -> str:
    result = subprocess.run(args, capture_output=True, text=True, check=True,
                            timeout=_COMMAND_TIMEOUT)
    return result.stdout


def _container_port_scan(tcp: PortSet, udp: PortSet) -> bool:
    """Scan ports inside running docker containers; False if docker is unreachable."""
    try:
        container_ids = _run(["docker", "ps", "-q"]).split()
    except (OSError, subprocess.SubprocessError):
        return False
    for container_id in container_ids:
        try:
            output = _run(["docker", "exec", container_id, "cat",
                           "/proc/net/tcp", "/proc/net/tcp6"])
        except (OSError, subprocess.SubprocessError):
            continue
        listen, established = parse_proc_net_tcp(output)
        for port in listen:
            tcp.add(port, SocketState.LISTEN)
        for port in established:
            tcp.add(port, SocketState.ESTABLISHED)
        try:
            output = _run(["docker", "exec", container_id, "cat",
                           "/proc/net/udp", "/proc/net/udp6"])
        except (OSError, subprocess.SubprocessError):
            continue
        for port in parse_proc_net_udp(output):
            udp.add(port, SocketState.LISTEN)
    return True


def _k8s_port_scan(tcp: PortSet, udp: PortSet, proc_dir: Optional[str] = None) -> None:
    """Scan every process network namespace under the host's proc directory."""
    if proc_dir is None:
        proc_dir = os.environ.get("HOST_PROC", "")
    if not proc_dir:
        return
    try:
        entries = sorted(Path(proc_dir).iterdir())
    except OSError:
        return
    for entry in entries:
        if not entry.is_dir():
            continue
        try:
            for name in ("net/tcp", "net/tcp6"):
                path = entry / name
                if path.exists():
                    listen, established = parse_proc_net_tcp(path.read_text().splitlines())
                    for port in listen:
                        tcp.add(port, SocketState.LISTEN)
                    for port in established:
                        tcp.add(port, SocketState.ESTABLISHED)
            for name in ("net/udp", "net/udp6"):
                path = entry / name
                if path.exists():
                    for port in parse_proc_net_udp(path.read_text().splitlines()):
                        udp.add(port, SocketState.LISTEN)
        except OSError:
            continue


def service_port_scan(k8s: bool) -> Tuple[PortSet, PortSet]:
    """Collect the TCP and UDP ports in use on the host, its containers and pods."""
    tcp = PortSet()
    udp = PortSet()
    _host_port_scan(tcp, udp)
    _container_port_scan(tcp, udp)
    if k8s:
        _k8s_port_scan(tcp, udp)
    return tcp, udp