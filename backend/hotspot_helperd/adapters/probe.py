import ipaddress
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from hotspot_helperd.adapters.inventory import AdapterSnapshot, list_adapter_snapshots
from hotspot_helperd.profile import normalize_adapter_id

_LINK_LOCAL = ipaddress.ip_network("169.254.0.0/16")

SnapshotSource = Callable[[], Iterable[AdapterSnapshot]]


@dataclass(frozen=True)
class ProbeResult:
    has_usable_ipv4: bool
    ipv4: Optional[str] = None
    reason: str = "ok"


def _ipv4(value: str) -> Optional[ipaddress.IPv4Address]:
    # Get-NetIPAddress can append a zone/prefix on odd drivers.
    raw = (value or "").split("%", 1)[0].split("/", 1)[0].strip()
    try:
        addr = ipaddress.ip_address(raw)
    except ValueError:
        return None
    return addr if isinstance(addr, ipaddress.IPv4Address) else None


def is_link_local(value: str) -> bool:
    addr = _ipv4(value)
    return addr is not None and addr in _LINK_LOCAL


def evaluate(snapshot: Optional[AdapterSnapshot]) -> ProbeResult:
    """
    Usable means: adapter present, up, with an IPv4 default gateway and a
    unicast IPv4 address outside 169.254.0.0/16. A stale or self-assigned
    address after an uplink drop fails the gateway or APIPA check.
    """
    if snapshot is None:
        return ProbeResult(False, reason="adapter_missing")
    if not snapshot.is_up:
        return ProbeResult(False, reason="adapter_down")

    has_gateway = False
    for gw in snapshot.gateways:
        addr = _ipv4(gw)
        if addr is not None and not addr.is_unspecified:
            has_gateway = True
            break
    if not has_gateway:
        return ProbeResult(False, reason="no_ipv4_gateway")

    for raw in snapshot.ipv4_addresses:
        addr = _ipv4(raw)
        if addr is None or addr.is_unspecified or addr in _LINK_LOCAL:
            continue
        return ProbeResult(True, ipv4=str(addr))
    return ProbeResult(False, reason="no_usable_ipv4")


def find_adapter(snapshots: Iterable[AdapterSnapshot], adapter_id: str) -> Optional[AdapterSnapshot]:
    target = normalize_adapter_id(adapter_id)
    if not target:
        return None
    for snap in snapshots:
        if snap.adapter_id == target:
            return snap
    return None


def probe(adapter_id: str, *, snapshots: SnapshotSource = list_adapter_snapshots) -> ProbeResult:
    """
    Live reachability of one adapter. Enumeration failures propagate; an
    adapter that has disappeared is simply unreachable.
    """
    if not normalize_adapter_id(adapter_id):
        return ProbeResult(False, reason="adapter_missing")
    return evaluate(find_adapter(snapshots(), adapter_id))
