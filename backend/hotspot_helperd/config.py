import json
import os
from pathlib import Path
from typing import Any, Dict, List

from hotspot_helperd.profile import (
    DEFAULT_BACKEND,
    normalize_backend,
    passphrase_length_ok,
)

CONFIG_SCHEMA_VERSION = 1


def _config_dir() -> Path:
    appdata = (os.environ.get("APPDATA") or "").strip()
    if appdata:
        return Path(appdata) / "WiFi hotspot helper"
    return Path.home() / ".config" / "wifi-hotspot-helper"


def _config_path() -> Path:
    override = (os.environ.get("HOTSPOT_HELPER_CONFIG") or "").strip()
    if override:
        return Path(override)
    return _config_dir() / "config.json"


CONFIG_PATH = _config_path()
CONFIG_TMP = CONFIG_PATH.with_name(CONFIG_PATH.name + ".tmp")

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_SCHEMA_VERSION,

    # Hotspot identity
    "hotspot_name": "",
    "hotspot_passphrase": "",

    # Auto-management
    "auto_manage": False,
    "bound_adapter_id": "",
    "exec_mode": DEFAULT_BACKEND,   # "shared-connection" | "os-tethering"

    # Loop timing
    "tick_interval_s": 3.0,
    "status_poll_interval_s": 10.0,

    # netsh output decoding: blank -> system legacy code page
    "legacy_encoding": "",
}


def read_config_file() -> Dict[str, Any]:
    """
    Returns the raw JSON content on disk (or {} if missing/invalid).
    """
    if not CONFIG_PATH.exists():
        return {}
    try:
        data = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def _write_atomic(path: Path, tmp: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except Exception:
            pass
    os.replace(tmp, path)


def _apply_migrations(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)
    if out.get("version") != CONFIG_SCHEMA_VERSION:
        out["version"] = CONFIG_SCHEMA_VERSION
    backend = normalize_backend(out.get("exec_mode"))
    out["exec_mode"] = backend or DEFAULT_BACKEND
    if isinstance(out.get("bound_adapter_id"), str):
        out["bound_adapter_id"] = out["bound_adapter_id"].strip()
    return out


def load_config() -> Dict[str, Any]:
    """
    Returns DEFAULT_CONFIG merged with on-disk config.
    """
    cfg = DEFAULT_CONFIG.copy()
    cfg.update(read_config_file())
    return _apply_migrations(cfg)


def validate_config(cfg: Dict[str, Any]) -> List[str]:
    """
    Save-time checks. Backend-specific rules (netsh refusing an empty
    passphrase) are enforced when the hotspot is started, not here.
    """
    errors: List[str] = []
    name = cfg.get("hotspot_name")
    if not isinstance(name, str) or not name.strip():
        errors.append("hotspot_name_empty")

    pw = cfg.get("hotspot_passphrase")
    if not isinstance(pw, str):
        errors.append("hotspot_passphrase_invalid")
    elif pw and not passphrase_length_ok(pw):
        errors.append("hotspot_passphrase_length_8_63")

    if normalize_backend(cfg.get("exec_mode")) is None:
        errors.append("exec_mode_invalid")
    return errors


def write_config_file(partial_updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist a partial update to disk. Callers should pass only approved keys.

    Returns the merged config after write.
    """
    if not isinstance(partial_updates, dict):
        partial_updates = {}

    merged: Dict[str, Any] = DEFAULT_CONFIG.copy()
    merged.update(read_config_file())
    merged.update(partial_updates)
    merged = _apply_migrations(merged)

    _write_atomic(CONFIG_PATH, CONFIG_TMP, json.dumps(merged, indent=2))
    # Holds the hotspot passphrase.
    try:
        CONFIG_PATH.chmod(0o600)
    except Exception:
        pass
    return merged


def ensure_config_file():
    if CONFIG_PATH.exists():
        return
    write_config_file({})
