import logging
import threading
import time

from hotspot_helperd.adapters.probe import ProbeResult
from hotspot_helperd.errors import ExternalToolError
from hotspot_helperd.executor import SingleFlightExecutor
from hotspot_helperd.reconciler import (
    REASON_AUTO_MANAGE,
    REASON_AUTO_RECOVERY,
    REASON_CONFIG_UPDATED,
    Reconciler,
    ReconcilerState,
    StatusPoller,
    StatusResult,
    reconcile_tick,
    status_poll_interval,
    tick_interval,
)

GUID = "5f1c2a9e-0d1b-4c33-9a51-3f7a2b1c9d00"

UP = ProbeResult(True, ipv4="192.168.1.20")
DOWN = ProbeResult(False, reason="adapter_down")


def _cfg(**kw):
    cfg = {
        "hotspot_name": "VR-Link",
        "hotspot_passphrase": "supersecret",
        "auto_manage": True,
        "bound_adapter_id": GUID,
        "exec_mode": "shared-connection",
    }
    cfg.update(kw)
    return cfg


class FakeExecutor:
    def __init__(self, busy=False):
        self.busy = busy
        self.generation = 0
        self.requests = []

    def request(self, enabled, reason):
        self.requests.append((enabled, reason))

    def snapshot(self):
        return {"state": "idle", "in_flight": None, "pending": None, "last_result": None}


class FakePoller:
    def __init__(self):
        self.starts = 0
        self.results = []

    def start(self, generation=0):
        self.starts += 1
        return True

    def take(self):
        return self.results.pop(0) if self.results else None


class ProbeSequence:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, adapter_id):
        self.calls.append(adapter_id)
        res = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(res, Exception):
            raise res
        return res


def _tick(state, *, cfg=None, probe_fn, poller=None, executor, now=0.0):
    return reconcile_tick(
        state,
        cfg=cfg if cfg is not None else _cfg(),
        probe_fn=probe_fn,
        poller=poller or FakePoller(),
        executor=executor,
        now=now,
    )


def test_unchanged_desired_state_dispatches_once():
    ex = FakeExecutor()
    probe = ProbeSequence(UP)
    state = ReconcilerState()
    for i in range(5):
        state = _tick(state, probe_fn=probe, executor=ex, now=float(i))

    assert ex.requests == [(True, REASON_AUTO_MANAGE)]
    assert len(probe.calls) == 5


def test_transition_dispatches_stop_then_start():
    ex = FakeExecutor()
    probe = ProbeSequence(UP, DOWN, DOWN, UP)
    state = ReconcilerState()
    for i in range(4):
        state = _tick(state, probe_fn=probe, executor=ex, now=float(i))

    assert ex.requests == [
        (True, REASON_AUTO_MANAGE),
        (False, REASON_AUTO_MANAGE),
        (True, REASON_AUTO_MANAGE),
    ]


def test_first_tick_with_adapter_offline_dispatches_stop():
    ex = FakeExecutor()
    state = _tick(ReconcilerState(), probe_fn=ProbeSequence(DOWN), executor=ex)
    assert ex.requests == [(False, REASON_AUTO_MANAGE)]
    assert state.last_desired is False


def test_input_state_is_not_mutated():
    ex = FakeExecutor()
    before = ReconcilerState()
    after = _tick(before, probe_fn=ProbeSequence(UP), executor=ex)
    assert before.last_desired is None
    assert after.last_desired is True


def test_idle_when_auto_manage_off_or_unbound():
    ex = FakeExecutor()
    probe = ProbeSequence(UP)

    state = _tick(ReconcilerState(last_desired=True), cfg=_cfg(auto_manage=False), probe_fn=probe, executor=ex)
    assert state.idle_reason == "auto_manage_disabled"
    assert state.last_desired is None

    state = _tick(state, cfg=_cfg(bound_adapter_id=""), probe_fn=probe, executor=ex)
    assert state.idle_reason == "no_adapter_bound"

    state = _tick(state, cfg=_cfg(hotspot_name="  "), probe_fn=probe, executor=ex)
    assert state.idle_reason == "hotspot_name_empty"

    assert probe.calls == []
    assert ex.requests == []


def test_leaving_idle_dispatches_fresh():
    ex = FakeExecutor()
    probe = ProbeSequence(UP)
    state = _tick(ReconcilerState(), probe_fn=probe, executor=ex)
    state = _tick(state, cfg=_cfg(auto_manage=False), probe_fn=probe, executor=ex)
    state = _tick(state, probe_fn=probe, executor=ex)
    assert ex.requests == [(True, REASON_AUTO_MANAGE), (True, REASON_AUTO_MANAGE)]


def test_drift_triggers_auto_recovery():
    ex = FakeExecutor()
    poller = FakePoller()
    probe = ProbeSequence(UP)

    state = _tick(ReconcilerState(), probe_fn=probe, poller=poller, executor=ex, now=0.0)
    poller.results.append(StatusResult(enabled=False))
    state = _tick(state, probe_fn=probe, poller=poller, executor=ex, now=20.0)

    assert ex.requests == [(True, REASON_AUTO_MANAGE), (True, REASON_AUTO_RECOVERY)]
    assert state.last_observed is False


def test_drift_deferred_while_operation_in_flight():
    ex = FakeExecutor()
    poller = FakePoller()
    probe = ProbeSequence(UP)

    state = _tick(ReconcilerState(), probe_fn=probe, poller=poller, executor=ex, now=0.0)
    ex.busy = True
    poller.results.append(StatusResult(enabled=False))
    state = _tick(state, probe_fn=probe, poller=poller, executor=ex, now=20.0)

    assert ex.requests == [(True, REASON_AUTO_MANAGE)]
    assert state.last_observed is False


def test_no_recovery_when_desired_off():
    ex = FakeExecutor()
    poller = FakePoller()
    probe = ProbeSequence(DOWN)

    state = _tick(ReconcilerState(), probe_fn=probe, poller=poller, executor=ex)
    poller.results.append(StatusResult(enabled=False))
    _tick(state, probe_fn=probe, poller=poller, executor=ex, now=20.0)
    assert ex.requests == [(False, REASON_AUTO_MANAGE)]


def test_status_poll_is_rate_limited():
    ex = FakeExecutor()
    poller = FakePoller()
    probe = ProbeSequence(UP)
    state = ReconcilerState()
    for now in (0.0, 3.0, 6.0, 9.9, 10.0, 13.0):
        state = _tick(state, probe_fn=probe, poller=poller, executor=ex, now=now)
    assert poller.starts == 2


def test_status_failure_does_not_block_dispatch():
    ex = FakeExecutor()
    poller = FakePoller()
    poller.results.append(StatusResult(enabled=None, error="netsh failed"))

    state = _tick(ReconcilerState(), probe_fn=ProbeSequence(UP), poller=poller, executor=ex)
    assert ex.requests == [(True, REASON_AUTO_MANAGE)]
    assert state.last_observed is None


def test_probe_failure_keeps_state():
    ex = FakeExecutor()
    state = ReconcilerState(last_desired=True)
    out = _tick(state, probe_fn=ProbeSequence(ExternalToolError("Get-NetAdapter failed")), executor=ex)
    assert out.last_desired is True
    assert ex.requests == []


def test_intervals_are_clamped():
    assert tick_interval({}) == 3.0
    assert tick_interval({"tick_interval_s": 0}) == 0.5
    assert tick_interval({"tick_interval_s": "bad"}) == 3.0
    assert status_poll_interval({"status_poll_interval_s": 1}) == 10.0
    assert status_poll_interval({"status_poll_interval_s": 30}) == 30.0


def _reconciler(ex, *, cfg=None, probe=None, poller=None):
    cfg = cfg or _cfg()
    return Reconciler(
        config_loader=lambda: dict(cfg),
        probe_fn=probe or ProbeSequence(UP),
        executor=ex,
        poller=poller or FakePoller(),
        clock=lambda: 0.0,
    )


def test_config_update_restarts_running_hotspot():
    ex = FakeExecutor()
    rec = _reconciler(ex)

    assert rec.tick() is True
    rec.on_config_saved(_cfg(hotspot_name="New-Name"))
    assert rec.state.last_desired is None
    rec.tick()

    assert ex.requests == [
        (True, REASON_AUTO_MANAGE),
        (False, REASON_CONFIG_UPDATED),
        (True, REASON_AUTO_MANAGE),
    ]


def test_config_update_without_running_hotspot_only_resets():
    ex = FakeExecutor()
    rec = _reconciler(ex, probe=ProbeSequence(DOWN))
    rec.tick()
    rec.on_config_saved(_cfg())
    assert ex.requests == [(False, REASON_AUTO_MANAGE)]


def test_config_update_ignored_when_auto_manage_off():
    ex = FakeExecutor()
    rec = _reconciler(ex)
    rec.tick()
    rec.on_config_saved(_cfg(auto_manage=False))
    assert ex.requests == [(True, REASON_AUTO_MANAGE)]
    assert rec.state.last_desired is True


def test_overlapping_tick_is_skipped():
    ex = FakeExecutor()
    rec = _reconciler(ex)
    rec._tick_lock.acquire()
    try:
        assert rec.tick() is False
    finally:
        rec._tick_lock.release()
    assert ex.requests == []


def test_snapshot_shape():
    ex = FakeExecutor()
    rec = _reconciler(ex)
    rec.tick()
    snap = rec.snapshot()
    assert snap["last_desired"] is True
    assert snap["last_probe"]["ipv4"] == "192.168.1.20"
    assert "last_status_check" not in snap
    assert snap["executor"]["state"] == "idle"
    assert isinstance(snap["last_tick_ts"], int)


def _wait_for_result(poller, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        res = poller.take()
        if res is not None:
            return res
        time.sleep(0.01)
    raise AssertionError("status poll did not finish")


def test_status_poller_runs_one_query_at_a_time():
    gate = threading.Event()

    def query():
        gate.wait(5)
        return True

    poller = StatusPoller(query)
    assert poller.start() is True
    assert poller.start() is False
    gate.set()
    assert _wait_for_result(poller) == StatusResult(enabled=True)
    assert poller.start() is True


def test_status_poller_reports_backend_error():
    def query():
        raise ExternalToolError("powershell failed")

    poller = StatusPoller(query)
    poller.start()
    res = _wait_for_result(poller)
    assert res.enabled is None
    assert res.error == "powershell failed"


def _wait_until(cond, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met")


def test_status_read_before_an_operation_finished_is_discarded():
    applied = []
    sampled = threading.Event()
    op_done = threading.Event()

    def query():
        value = bool(applied)
        sampled.set()
        op_done.wait(5)
        return value

    def operation(enabled):
        sampled.wait(5)
        applied.append(enabled)
        op_done.set()

    ex = SingleFlightExecutor(operation)
    poller = StatusPoller(query)
    probe = ProbeSequence(UP)

    state = _tick(ReconcilerState(), probe_fn=probe, poller=poller, executor=ex, now=0.0)
    assert ex.wait_idle(5)
    _wait_until(lambda: not poller.running)
    state = _tick(state, probe_fn=probe, poller=poller, executor=ex, now=3.0)

    assert ex.wait_idle(5)
    assert applied == [True]
    assert state.last_observed is None


def test_state_reads_and_config_hook_do_not_wait_for_a_running_tick():
    entered = threading.Event()
    release = threading.Event()

    def slow_probe(adapter_id):
        entered.set()
        release.wait(5)
        return UP

    ex = FakeExecutor()
    rec = _reconciler(ex, probe=slow_probe)
    t = threading.Thread(target=rec.tick)
    t.start()
    try:
        assert entered.wait(5)
        started = time.monotonic()
        rec.snapshot()
        rec.on_config_saved(_cfg(hotspot_name="New-Name"))
        elapsed = time.monotonic() - started
        assert t.is_alive()
    finally:
        release.set()
        t.join(5)

    assert elapsed < 1.0
    # The overlapping pass started the hotspot with the old profile.
    assert ex.requests == [(True, REASON_AUTO_MANAGE), (False, REASON_CONFIG_UPDATED)]
    assert rec.state.last_desired is None
    rec.tick()
    assert ex.requests[-1] == (True, REASON_AUTO_MANAGE)


def test_ipv4_and_status_logged_only_on_change(caplog):
    caplog.set_level(logging.INFO, logger="hotspot_helperd.reconciler")
    ex = FakeExecutor()
    poller = FakePoller()
    probe = ProbeSequence(UP, UP, UP, ProbeResult(True, ipv4="192.168.1.21"))

    def count(prefix):
        return sum(1 for r in caplog.records if r.getMessage().startswith(prefix))

    state = ReconcilerState()
    for now in (0.0, 10.0, 20.0):
        poller.results.append(StatusResult(enabled=True))
        state = _tick(state, probe_fn=probe, poller=poller, executor=ex, now=now)

    assert count("bound_adapter_ipv4=") == 1
    assert count("hotspot_status ") == 1

    _tick(state, probe_fn=probe, poller=poller, executor=ex, now=30.0)
    assert count("bound_adapter_ipv4=") == 2
    assert count("hotspot_status ") == 1
