import logging
from typing import Any, Callable, Dict, Optional, Protocol

from hotspot_helperd.config import load_config
from hotspot_helperd.engine.hosted_network import HostedNetworkBackend
from hotspot_helperd.engine.runner import CommandRunner, run_command
from hotspot_helperd.engine.tethering import TetheringBackend
from hotspot_helperd.profile import BACKEND_OS_TETHERING, HotspotProfile

log = logging.getLogger("hotspot_helperd.hotspot")

ConfigLoader = Callable[[], Dict[str, Any]]


class HotspotBackend(Protocol):
    name: str

    def query_enabled(self) -> bool:
        ...

    def set_enabled(self, enabled: bool) -> None:
        ...


def select_backend(
    profile: HotspotProfile,
    *,
    runner: CommandRunner = run_command,
    legacy_encoding: Optional[str] = None,
) -> HotspotBackend:
    if profile.backend == BACKEND_OS_TETHERING:
        return TetheringBackend(profile, runner=runner)
    return HostedNetworkBackend(profile, runner=runner, legacy=legacy_encoding)


def _backend_from_config(config_loader: ConfigLoader, runner: CommandRunner) -> HotspotBackend:
    # Read fresh every time so edits apply on the next operation.
    cfg = config_loader()
    legacy = cfg.get("legacy_encoding")
    return select_backend(
        HotspotProfile.from_config(cfg),
        runner=runner,
        legacy_encoding=legacy if isinstance(legacy, str) else None,
    )


def set_hotspot_enabled(
    enabled: bool,
    *,
    config_loader: ConfigLoader = load_config,
    runner: CommandRunner = run_command,
) -> None:
    backend = _backend_from_config(config_loader, runner)
    log.debug("set_enabled backend=%s enabled=%s", backend.name, enabled)
    backend.set_enabled(enabled)


def get_hotspot_enabled(
    *,
    config_loader: ConfigLoader = load_config,
    runner: CommandRunner = run_command,
) -> bool:
    return _backend_from_config(config_loader, runner).query_enabled()
