"""Finding the audio server on the local network over multicast DNS."""

from __future__ import annotations

import ipaddress
import socket
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

import dns.exception
import dns.message
import dns.name
import dns.rdatatype

SERVICE_TYPE = "_loxaudio._tcp.local."
DISCOVERY_TIMEOUT = 8.0
_MDNS_ADDR = ("224.0.0.251", 5353)
_REQUERY_INTERVAL = 1.0
_MAX_PACKET = 9000


class DiscoveryError(Exception):
    """Raised when no usable server is found."""


@dataclass
class DiscoveredServer:
    """A server announced on the network and its API paths."""

    base_url: str
    register_path: str
    status_path: str
    txt: dict[str, str] = field(default_factory=dict)


def normalize_path(path: str) -> str:
    """Make sure a path starts with a slash."""
    return path if path.startswith("/") else f"/{path}"


def resolve_host(addresses: Iterable[str], hostname: str) -> str:
    """Prefer the first IPv4 address; otherwise the host name without trailing dots."""
    for address in addresses:
        try:
            if ipaddress.ip_address(address).version == 4:
                return str(address)
        except ValueError:
            continue
    return hostname.rstrip(".")


def server_from_service(
    addresses: Iterable[str], hostname: str, port: int, txt: Mapping[str, str]
) -> DiscoveredServer:
    """Build a server description from a resolved service announcement."""
    host = resolve_host(addresses, hostname)
    api_prefix = txt.get("api", "/api")
    register_path = normalize_path(
        txt.get("linein_register", f"{api_prefix}/linein/bridges/register")
    )
    status_path = normalize_path(
        txt.get("linein_status", f"{api_prefix}/linein/bridges/{{bridge_id}}/status")
    )
    return DiscoveredServer(
        base_url=f"http://{host}:{port}",
        register_path=register_path,
        status_path=status_path,
        txt=dict(txt),
    )


def select_server(
    candidates: Sequence[DiscoveredServer],
    preferred_name: str | None = None,
    preferred_mac: str | None = None,
) -> DiscoveredServer:
    """Pick a server: the only one, else by MAC, else by name, else the first."""
    if not candidates:
        raise DiscoveryError("no _loxaudio._tcp services found")
    if len(candidates) == 1:
        return candidates[0]
    if preferred_mac is not None:
        for server in candidates:
            if server.txt.get("mac") == preferred_mac:
                return server
    if preferred_name is not None:
        for server in candidates:
            if server.txt.get("name") == preferred_name:
                return server
    return candidates[0]


def _parse_txt(rrset: Iterable[object]) -> dict[str, str]:
    txt: dict[str, str] = {}
    for rdata in rrset:
        for entry in getattr(rdata, "strings", ()):
            key, _, value = bytes(entry).partition(b"=")
            name = key.decode("utf-8", errors="replace")
            if name:
                txt.setdefault(name, value.decode("utf-8", errors="replace"))
    return txt


class _ServiceRecords:
    """Records gathered from responses, assembled into resolved services."""

    def __init__(self, service_type: str) -> None:
        self._service = dns.name.from_text(service_type)
        self._instances: dict[dns.name.Name, None] = {}
        self._srv: dict[dns.name.Name, tuple[dns.name.Name, int]] = {}
        self._txt: dict[dns.name.Name, dict[str, str]] = {}
        self._addresses: dict[dns.name.Name, list[str]] = {}

    def absorb(self, message: dns.message.Message) -> None:
        for rrset in (*message.answer, *message.additional):
            kind = rrset.rdtype
            if kind == dns.rdatatype.PTR and rrset.name == self._service:
                for rdata in rrset:
                    target = getattr(rdata, "target", None)
                    if target is not None:
                        self._instances.setdefault(target, None)
            elif kind == dns.rdatatype.SRV:
                for rdata in rrset:
                    port = getattr(rdata, "port", None)
                    if port is not None and rrset.name not in self._srv:
                        self._srv[rrset.name] = (rdata.target, int(port))
            elif kind == dns.rdatatype.TXT:
                self._txt.setdefault(rrset.name, _parse_txt(rrset))
            elif kind in (dns.rdatatype.A, dns.rdatatype.AAAA):
                known = self._addresses.setdefault(rrset.name, [])
                for rdata in rrset:
                    address = getattr(rdata, "address", None)
                    if address is not None and address not in known:
                        known.append(address)

    def queries(self) -> list[bytes]:
        wanted = [(self._service, dns.rdatatype.PTR)]
        for instance in self._instances:
            if instance not in self._srv:
                wanted.append((instance, dns.rdatatype.SRV))
            if instance not in self._txt:
                wanted.append((instance, dns.rdatatype.TXT))
            srv = self._srv.get(instance)
            if srv is not None and srv[0] not in self._addresses:
                wanted.append((srv[0], dns.rdatatype.A))
        return [dns.message.make_query(name, kind).to_wire() for name, kind in wanted]

    def servers(self) -> list[DiscoveredServer]:
        found = []
        for instance in self._instances:
            srv = self._srv.get(instance)
            txt = self._txt.get(instance)
            if srv is None or txt is None:
                continue
            target, port = srv
            addresses = self._addresses.get(target, [])
            found.append(server_from_service(addresses, target.to_text(), port, txt))
        return found


def _browse(service_type: str, timeout: float) -> list[DiscoveredServer]:
    records = _ServiceRecords(service_type)
    deadline = time.monotonic() + timeout
    next_query = 0.0
    first_send = True
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.bind(("", 0))
        while True:
            now = time.monotonic()
            if now >= deadline:
                break
            if now >= next_query:
                for query in records.queries():
                    try:
                        sock.sendto(query, _MDNS_ADDR)
                    except OSError as err:
                        if first_send:
                            raise DiscoveryError(f"browse mDNS services: {err}") from err
                first_send = False
                next_query = now + _REQUERY_INTERVAL
            sock.settimeout(max(min(deadline, next_query) - now, 0.001))
            try:
                data, _ = sock.recvfrom(_MAX_PACKET)
            except socket.timeout:
                continue
            except OSError:
                break
            try:
                message = dns.message.from_wire(data)
            except dns.exception.DNSException:
                continue
            records.absorb(message)
    return records.servers()


def discover_server(
    preferred_name: str | None = None, preferred_mac: str | None = None
) -> DiscoveredServer:
    """Browse for audio servers for a few seconds and pick one."""
    candidates = _browse(SERVICE_TYPE, DISCOVERY_TIMEOUT)
    return select_server(candidates, preferred_name, preferred_mac)