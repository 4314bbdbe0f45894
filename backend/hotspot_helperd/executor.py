import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from hotspot_helperd.errors import HotspotError

log = logging.getLogger("hotspot_helperd.executor")

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_RUNNING_QUEUED = "running+queued"


@dataclass(frozen=True)
class OpRequest:
    enabled: bool
    reason: str


def _op_name(enabled: bool) -> str:
    return "enable" if enabled else "disable"


class SingleFlightExecutor:
    """
    Runs hotspot mutations one at a time on a background thread.

    While an operation is in flight, further requests overwrite a single
    pending slot (latest wins); the slot is drained when the in-flight call
    returns. An intermediate request that gets overwritten never runs.
    """

    def __init__(self, operation: Callable[[bool], None], *, name: str = "hotspot-op"):
        self._operation = operation
        self._name = name
        self._cond = threading.Condition()
        self._in_flight: Optional[OpRequest] = None
        self._pending: Optional[OpRequest] = None
        self._last_result: Optional[Dict[str, Any]] = None
        # Bumped each time an operation finishes.
        self._generation = 0

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._in_flight is not None

    @property
    def generation(self) -> int:
        with self._cond:
            return self._generation

    @property
    def pending(self) -> Optional[OpRequest]:
        with self._cond:
            return self._pending

    @property
    def state(self) -> str:
        with self._cond:
            return self._state_locked()

    def _state_locked(self) -> str:
        if self._in_flight is None:
            return STATE_IDLE
        if self._pending is None:
            return STATE_RUNNING
        return STATE_RUNNING_QUEUED

    def request(self, enabled: bool, reason: str) -> None:
        req = OpRequest(bool(enabled), reason or "")
        with self._cond:
            if self._in_flight is not None:
                replaced = self._pending
                self._pending = req
                log.info(
                    "hotspot_op_queued op=%s reason=%s%s",
                    _op_name(req.enabled),
                    req.reason,
                    f" replaces={_op_name(replaced.enabled)}" if replaced else "",
                )
                return
            self._in_flight = req

        t = threading.Thread(target=self._worker, args=(req,), name=self._name, daemon=True)
        t.start()

    def _run_one(self, req: OpRequest) -> Dict[str, Any]:
        op = _op_name(req.enabled)
        log.info("hotspot_op_start op=%s reason=%s", op, req.reason, extra={"op": op, "reason": req.reason})
        started = time.monotonic()
        error: Optional[str] = None
        try:
            self._operation(req.enabled)
        except HotspotError as exc:
            error = str(exc)
            log.warning(
                "hotspot_op_failed op=%s reason=%s error=%s",
                op,
                req.reason,
                error,
                extra={"op": op, "reason": req.reason},
            )
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            log.exception("hotspot_op_crashed op=%s reason=%s", op, req.reason)
        else:
            log.info("hotspot_op_ok op=%s reason=%s", op, req.reason, extra={"op": op, "reason": req.reason})
        return {
            "op": op,
            "reason": req.reason,
            "ok": error is None,
            "error": error,
            "duration_s": round(time.monotonic() - started, 3),
            "finished_ts": int(time.time()),
        }

    def _worker(self, req: Optional[OpRequest]) -> None:
        while req is not None:
            result = self._run_one(req)
            with self._cond:
                self._last_result = result
                self._generation += 1
                req = self._pending
                self._pending = None
                self._in_flight = req
                self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._in_flight is None, timeout=timeout)

    def snapshot(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "state": self._state_locked(),
                "in_flight": _req_view(self._in_flight),
                "pending": _req_view(self._pending),
                "last_result": dict(self._last_result) if self._last_result else None,
            }


def _req_view(req: Optional[OpRequest]) -> Optional[Dict[str, Any]]:
    if req is None:
        return None
    return {"op": _op_name(req.enabled), "reason": req.reason}
