import json
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from hotspot_helperd.engine.runner import CommandRunner, powershell_argv, run_command
from hotspot_helperd.errors import ExternalToolError
from hotspot_helperd.profile import normalize_adapter_id

INVENTORY_TIMEOUT_S = 15.0

# One round trip for every adapter: identity, link state, IPv4 gateways, IPv4 unicast.
_INVENTORY_SCRIPT = (
    "$ErrorActionPreference='Stop';"
    "$out=@();"
    "foreach($a in @(Get-NetAdapter)){"
    "  $cfg=Get-NetIPConfiguration -InterfaceIndex $a.ifIndex -ErrorAction SilentlyContinue;"
    "  $gw=@($cfg.IPv4DefaultGateway | Where-Object { $_ -ne $null } | ForEach-Object { [string]$_.NextHop });"
    "  $ips=@(Get-NetIPAddress -InterfaceIndex $a.ifIndex -AddressFamily IPv4 -ErrorAction SilentlyContinue"
    " | ForEach-Object { [string]$_.IPAddress });"
    "  $out+=[pscustomobject]@{id=[string]$a.InterfaceGuid;name=[string]$a.Name;"
    "description=[string]$a.InterfaceDescription;status=[string]$a.Status;gateways=$gw;ipv4=$ips}"
    "};"
    "ConvertTo-Json -InputObject @($out) -Depth 4 -Compress"
)


@dataclass(frozen=True)
class AdapterSnapshot:
    adapter_id: str
    name: str
    description: str
    status: str
    gateways: Tuple[str, ...]
    ipv4_addresses: Tuple[str, ...]

    @property
    def is_up(self) -> bool:
        return self.status == "up"


def _str_list(value: Any) -> Tuple[str, ...]:
    # ConvertTo-Json collapses one-element arrays to scalars.
    if value is None:
        return ()
    if isinstance(value, str):
        return (value.strip(),) if value.strip() else ()
    if isinstance(value, list):
        return tuple(str(v).strip() for v in value if v is not None and str(v).strip())
    return ()


def _parse_inventory_json(text: str) -> List[AdapterSnapshot]:
    text = (text or "").strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        raise ExternalToolError("adapter inventory returned invalid JSON", output=text) from None

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []

    items: List[AdapterSnapshot] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        adapter_id = normalize_adapter_id(raw.get("id"))
        if not adapter_id:
            continue
        items.append(
            AdapterSnapshot(
                adapter_id=adapter_id,
                name=str(raw.get("name") or ""),
                description=str(raw.get("description") or ""),
                status=str(raw.get("status") or "").strip().lower(),
                gateways=_str_list(raw.get("gateways")),
                ipv4_addresses=_str_list(raw.get("ipv4")),
            )
        )
    return items


def list_adapter_snapshots(*, runner: CommandRunner = run_command) -> List[AdapterSnapshot]:
    res = runner(powershell_argv(_INVENTORY_SCRIPT), timeout_s=INVENTORY_TIMEOUT_S, encoding="utf-8")
    if res.timed_out:
        raise ExternalToolError("adapter inventory timed out", output=res.output)
    if res.exit_code != 0:
        err = res.stderr.strip() or res.stdout.strip() or "adapter inventory failed"
        raise ExternalToolError(err, output=res.output, exit_code=res.exit_code)
    return _parse_inventory_json(res.stdout)


def get_adapters(*, runner: CommandRunner = run_command) -> Dict[str, Any]:
    """
    Adapter choices for binding: {"adapters": [{"id", "name", ...}]}, sorted by
    name then id.
    """
    snaps = list_adapter_snapshots(runner=runner)
    adapters = [
        {
            "id": s.adapter_id,
            "name": s.name,
            "description": s.description,
            "status": s.status,
        }
        for s in snaps
    ]
    adapters.sort(key=lambda a: (a["name"].lower(), a["id"]))
    return {"adapters": adapters}
