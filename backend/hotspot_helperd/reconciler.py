import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Optional, Protocol

from hotspot_helperd.adapters.probe import ProbeResult, probe
from hotspot_helperd.config import load_config
from hotspot_helperd.engine.runner import CommandRunner, run_command
from hotspot_helperd.errors import HotspotError
from hotspot_helperd.executor import SingleFlightExecutor
from hotspot_helperd.hotspot import ConfigLoader, get_hotspot_enabled, set_hotspot_enabled
from hotspot_helperd.profile import HotspotProfile

log = logging.getLogger("hotspot_helperd.reconciler")

REASON_AUTO_MANAGE = "auto-manage"
REASON_AUTO_RECOVERY = "auto-recovery"
REASON_CONFIG_UPDATED = "config-updated"

TICK_INTERVAL_DEFAULT_S = 3.0
STATUS_POLL_MIN_S = 10.0
STATUS_POLL_MAX_S = 300.0

ProbeFn = Callable[[str], ProbeResult]


class Dispatcher(Protocol):
    @property
    def busy(self) -> bool:
        ...

    @property
    def generation(self) -> int:
        ...

    def request(self, enabled: bool, reason: str) -> None:
        ...


@dataclass
class ReconcilerState:
    # Last desired state handed to the executor (edge trigger memory).
    last_desired: Optional[bool] = None
    # Last state reported by the backend itself.
    last_observed: Optional[bool] = None
    last_status_check: Optional[float] = None
    # "" once "no usable IPv4" has been logged.
    last_logged_ipv4: Optional[str] = None
    idle_reason: Optional[str] = None
    last_probe: Optional[ProbeResult] = None


@dataclass(frozen=True)
class StatusResult:
    enabled: Optional[bool]
    error: Optional[str] = None
    # Executor generation when the query started.
    generation: int = 0


class StatusPoller:
    """
    Runs the backend status query on its own thread, one at a time. The tick
    starts a poll and later collects whatever has completed.
    """

    def __init__(self, query: Callable[[], bool], *, name: str = "hotspot-status"):
        self._query = query
        self._name = name
        self._lock = threading.Lock()
        self._running = False
        self._result: Optional[StatusResult] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def start(self, generation: int = 0) -> bool:
        with self._lock:
            if self._running:
                return False
            self._running = True
        threading.Thread(target=self._worker, args=(generation,), name=self._name, daemon=True).start()
        return True

    def take(self) -> Optional[StatusResult]:
        with self._lock:
            res, self._result = self._result, None
            return res

    def _worker(self, generation: int) -> None:
        try:
            res = StatusResult(enabled=bool(self._query()), generation=generation)
        except HotspotError as exc:
            res = StatusResult(enabled=None, error=str(exc), generation=generation)
        except Exception as exc:
            log.exception("hotspot_status_query_crashed")
            res = StatusResult(enabled=None, error=f"{type(exc).__name__}: {exc}", generation=generation)
        with self._lock:
            self._result = res
            self._running = False


def _clamp_interval(cfg: Dict[str, Any], key: str, default: float, lo: float, hi: float) -> float:
    try:
        val = float(cfg.get(key, default))
    except Exception:
        return default
    return max(lo, min(hi, val))


def tick_interval(cfg: Dict[str, Any]) -> float:
    return _clamp_interval(cfg, "tick_interval_s", TICK_INTERVAL_DEFAULT_S, 0.5, 60.0)


def status_poll_interval(cfg: Dict[str, Any]) -> float:
    return _clamp_interval(cfg, "status_poll_interval_s", STATUS_POLL_MIN_S, STATUS_POLL_MIN_S, STATUS_POLL_MAX_S)


def _idle_reason(cfg: Dict[str, Any], profile: HotspotProfile) -> Optional[str]:
    if not bool(cfg.get("auto_manage")):
        return "auto_manage_disabled"
    if not profile.adapter_id:
        return "no_adapter_bound"
    if not profile.name:
        return "hotspot_name_empty"
    return None


def _reconcile_status(
    state: ReconcilerState,
    desired: bool,
    *,
    poller: StatusPoller,
    executor: Dispatcher,
    now: float,
    interval_s: float,
) -> None:
    if state.last_status_check is None or (now - state.last_status_check) >= interval_s:
        if poller.start(executor.generation):
            state.last_status_check = now

    res = poller.take()
    if res is None:
        return
    # An operation finished while the query ran; what it read predates that write.
    if res.generation != executor.generation:
        log.debug("hotspot_status_stale: operation completed during query")
        return
    if res.error is not None:
        log.warning("hotspot_status_query_failed error=%s", res.error)
        return

    if state.last_observed != res.enabled:
        log.info("hotspot_status enabled=%s", "on" if res.enabled else "off")
        state.last_observed = res.enabled

    # Turned off behind our back (e.g. Mobile Hotspot idles out with no clients).
    if desired and not res.enabled and state.last_desired is True:
        if executor.busy:
            log.info("hotspot_drift_deferred: operation in flight")
            return
        log.info("hotspot_drift_detected: hotspot is off while the bound adapter is online, restarting")
        executor.request(True, REASON_AUTO_RECOVERY)


def reconcile_tick(
    state: ReconcilerState,
    *,
    cfg: Dict[str, Any],
    probe_fn: ProbeFn,
    poller: StatusPoller,
    executor: Dispatcher,
    now: float,
) -> ReconcilerState:
    """
    One reconciliation pass. Returns the updated state; the input is not mutated.
    """
    state = replace(state)
    profile = HotspotProfile.from_config(cfg)

    idle = _idle_reason(cfg, profile)
    if idle:
        if state.idle_reason != idle:
            log.info("auto_manage_idle reason=%s", idle)
        return ReconcilerState(idle_reason=idle)
    if state.idle_reason:
        log.info("auto_manage_active adapter=%s backend=%s", profile.adapter_id, profile.backend)
        state.idle_reason = None

    try:
        result = probe_fn(profile.adapter_id)
    except HotspotError as exc:
        log.warning("adapter_probe_failed adapter=%s error=%s", profile.adapter_id, exc)
        return state
    except Exception:
        log.exception("adapter_probe_crashed adapter=%s", profile.adapter_id)
        return state
    state.last_probe = result

    ip_value = (result.ipv4 or "") if result.has_usable_ipv4 else ""
    if state.last_logged_ipv4 != ip_value:
        state.last_logged_ipv4 = ip_value
        if ip_value:
            log.info("bound_adapter_ipv4=%s", ip_value, extra={"adapter": profile.adapter_id})
        else:
            log.info("bound_adapter_no_usable_ipv4 reason=%s", result.reason, extra={"adapter": profile.adapter_id})

    desired = result.has_usable_ipv4

    _reconcile_status(
        state,
        desired,
        poller=poller,
        executor=executor,
        now=now,
        interval_s=status_poll_interval(cfg),
    )

    if state.last_desired is not None and state.last_desired == desired:
        return state
    state.last_desired = desired

    if desired:
        log.info("bound adapter has IPv4, starting hotspot")
        executor.request(True, REASON_AUTO_MANAGE)
    else:
        log.info("bound adapter has no IPv4, stopping hotspot")
        executor.request(False, REASON_AUTO_MANAGE)
    return state


class Reconciler:
    def __init__(
        self,
        *,
        config_loader: ConfigLoader = load_config,
        probe_fn: ProbeFn = probe,
        runner: CommandRunner = run_command,
        executor: Optional[SingleFlightExecutor] = None,
        poller: Optional[StatusPoller] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config_loader = config_loader
        self._probe_fn = probe_fn
        self._clock = clock
        self._executor = executor or SingleFlightExecutor(
            lambda enabled: set_hotspot_enabled(enabled, config_loader=config_loader, runner=runner)
        )
        self._poller = poller or StatusPoller(
            lambda: get_hotspot_enabled(config_loader=config_loader, runner=runner)
        )
        self._state = ReconcilerState()
        # Overlap guard only; held for a whole pass.
        self._tick_lock = threading.Lock()
        # Guards _state and _config_generation; never held across I/O.
        self._state_lock = threading.Lock()
        self._config_generation = 0
        self._last_tick_ts: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def executor(self) -> SingleFlightExecutor:
        return self._executor

    @property
    def state(self) -> ReconcilerState:
        with self._state_lock:
            return replace(self._state)

    def tick(self) -> bool:
        """Run one pass. Returns False when skipped because a pass is still running."""
        if not self._tick_lock.acquire(blocking=False):
            log.debug("tick_skipped: previous tick still running")
            return False
        try:
            with self._state_lock:
                before = replace(self._state)
                generation = self._config_generation
            after = reconcile_tick(
                before,
                cfg=self._config_loader(),
                probe_fn=self._probe_fn,
                poller=self._poller,
                executor=self._executor,
                now=self._clock(),
            )
            with self._state_lock:
                if self._config_generation != generation:
                    # Config was saved mid-pass; this pass used the old profile.
                    if after.last_desired is True and before.last_desired is not True:
                        log.info("config_updated: stopping hotspot started with the previous settings")
                        self._executor.request(False, REASON_CONFIG_UPDATED)
                    after.last_desired = None
                self._state = after
            self._last_tick_ts = int(time.time())
        except Exception:
            log.exception("reconcile_tick_failed")
        finally:
            self._tick_lock.release()
        return True

    def on_config_saved(self, cfg: Dict[str, Any]) -> None:
        """
        A running hotspot keeps its old SSID/passphrase, so stop it and let the
        next tick start it again with the new profile.
        """
        if not bool(cfg.get("auto_manage")):
            return
        with self._state_lock:
            self._config_generation += 1
            if self._state.last_desired is True:
                log.info("config_updated: stopping hotspot so the next pass restarts it with new settings")
                self._executor.request(False, REASON_CONFIG_UPDATED)
            self._state.last_desired = None

    def snapshot(self) -> Dict[str, Any]:
        st = self.state
        out = asdict(st)
        out.pop("last_status_check", None)
        out["last_tick_ts"] = self._last_tick_ts
        out["executor"] = self._executor.snapshot()
        return out

    def _loop(self) -> None:
        log.info("reconciler_started")
        while not self._stop.is_set():
            try:
                interval = tick_interval(self._config_loader())
            except Exception:
                log.exception("tick_interval_read_failed")
                interval = TICK_INTERVAL_DEFAULT_S
            if self._stop.wait(interval):
                break
            self.tick()
        log.info("reconciler_stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="hotspot-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
