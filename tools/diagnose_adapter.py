#!/usr/bin/env python3
from __future__ import annotations

import sys
from pathlib import Path


def _print_adapters(snapshots, bound_id: str) -> None:
    print("=== ADAPTERS ===")
    for snap in sorted(snapshots, key=lambda s: (s.name.lower(), s.adapter_id)):
        mark = "*" if snap.adapter_id == bound_id else " "
        print(f"{mark} {snap.name} [{snap.status}] {snap.adapter_id}")
        print(f"    ipv4={','.join(snap.ipv4_addresses) or '-'} gateways={','.join(snap.gateways) or '-'}")


def main() -> int:
    root = Path(__file__).resolve().parents[1]
    backend_path = root / "backend"
    if str(backend_path) not in sys.path:
        sys.path.insert(0, str(backend_path))
    try:
        from hotspot_helperd.adapters.inventory import list_adapter_snapshots
        from hotspot_helperd.adapters.probe import evaluate, find_adapter
        from hotspot_helperd.config import CONFIG_PATH, load_config
        from hotspot_helperd.errors import HotspotError
        from hotspot_helperd.hotspot import get_hotspot_enabled
        from hotspot_helperd.profile import HotspotProfile
    except Exception as exc:
        print(f"import_failed: {exc}")
        return 1

    cfg = load_config()
    profile = HotspotProfile.from_config(cfg)
    print(f"config={CONFIG_PATH} backend={profile.backend} auto_manage={bool(cfg.get('auto_manage'))}")

    try:
        snapshots = list_adapter_snapshots()
    except HotspotError as exc:
        print(f"inventory_failed: {exc}")
        return 2
    _print_adapters(snapshots, profile.adapter_id)

    print("\n=== PROBE ===")
    if not profile.adapter_id:
        print("no adapter bound")
    else:
        result = evaluate(find_adapter(snapshots, profile.adapter_id))
        print(f"adapter={profile.adapter_id} usable={result.has_usable_ipv4} ipv4={result.ipv4 or '-'} reason={result.reason}")

    print("\n=== HOTSPOT ===")
    try:
        enabled = get_hotspot_enabled()
    except HotspotError as exc:
        print(f"status_failed: {exc}")
        return 3
    print(f"enabled={'on' if enabled else 'off'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
