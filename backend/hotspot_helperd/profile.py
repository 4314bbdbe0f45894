"""
Hotspot profile and adapter binding helpers.

Single source of truth for backend selector names and the passphrase rules
both backends enforce.
"""

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

BACKEND_SHARED_CONNECTION: Literal["shared-connection"] = "shared-connection"
BACKEND_OS_TETHERING: Literal["os-tethering"] = "os-tethering"

DEFAULT_BACKEND = BACKEND_SHARED_CONNECTION

# Older configs used "netsh" / "mobile".
_BACKEND_ALIASES: Dict[str, str] = {
    "shared-connection": BACKEND_SHARED_CONNECTION,
    "shared_connection": BACKEND_SHARED_CONNECTION,
    "netsh": BACKEND_SHARED_CONNECTION,
    "hostednetwork": BACKEND_SHARED_CONNECTION,
    "os-tethering": BACKEND_OS_TETHERING,
    "os_tethering": BACKEND_OS_TETHERING,
    "mobile": BACKEND_OS_TETHERING,
    "mobile_hotspot": BACKEND_OS_TETHERING,
}

# WPA2-PSK passphrase bounds.
PASSPHRASE_MIN_LEN = 8
PASSPHRASE_MAX_LEN = 63


def normalize_backend(value: Any) -> Optional[str]:
    """Map a selector (or alias) to its canonical name; None if unknown."""
    if not isinstance(value, str):
        return None
    return _BACKEND_ALIASES.get(value.strip().lower())


def normalize_adapter_id(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().strip("{}").strip().lower()


def passphrase_length_ok(passphrase: str) -> bool:
    return PASSPHRASE_MIN_LEN <= len(passphrase) <= PASSPHRASE_MAX_LEN


@dataclass(frozen=True)
class HotspotProfile:
    name: str
    passphrase: str
    backend: str
    adapter_id: str

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "HotspotProfile":
        name = cfg.get("hotspot_name")
        passphrase = cfg.get("hotspot_passphrase")
        return cls(
            name=name.strip() if isinstance(name, str) else "",
            passphrase=passphrase if isinstance(passphrase, str) else "",
            backend=normalize_backend(cfg.get("exec_mode")) or DEFAULT_BACKEND,
            adapter_id=normalize_adapter_id(cfg.get("bound_adapter_id")),
        )
