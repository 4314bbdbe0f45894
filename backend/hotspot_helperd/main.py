import logging
import signal
import sys
import threading

from hotspot_helperd.config import CONFIG_PATH, ensure_config_file, load_config
from hotspot_helperd.logging import setup_logging
from hotspot_helperd.profile import HotspotProfile
from hotspot_helperd.reconciler import Reconciler
from hotspot_helperd.server import build_server

log = logging.getLogger("hotspot_helperd.main")

# Bounded by the longest mutation timeout (tethering, 35s).
_EXECUTOR_DRAIN_S = 40.0


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum, _frame):
        if stop_event.is_set():
            return
        try:
            sig_name = signal.Signals(signum).name
        except Exception:
            sig_name = str(signum)
        log.info("shutdown_signal:%s", sig_name)
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handler)


def main():
    setup_logging()
    ensure_config_file()

    try:
        cfg = load_config()
        profile = HotspotProfile.from_config(cfg)
        log.info(
            "config_path=%s backend=%s auto_manage=%s adapter=%s",
            CONFIG_PATH,
            profile.backend,
            bool(cfg.get("auto_manage")),
            profile.adapter_id or "none",
        )
    except Exception:
        log.exception("config_summary_failed")

    reconciler = Reconciler()
    server = build_server(reconciler)
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    server_thread = threading.Thread(
        target=server.serve_forever,
        name="hotspot-helperd-http",
        daemon=True,
    )
    server_thread.start()
    reconciler.start()

    try:
        while server_thread.is_alive() and not stop_event.wait(0.5):
            pass
    finally:
        stop_event.set()
        try:
            reconciler.stop()
        except Exception:
            log.exception("reconciler_stop_failed")
        # The hotspot is left as is; only an operation already running is allowed to finish.
        if not reconciler.executor.wait_idle(timeout=_EXECUTOR_DRAIN_S):
            log.warning("hotspot_op_still_running_at_shutdown")
        try:
            server.shutdown()
        except Exception:
            log.exception("server_shutdown_failed")
        try:
            server.server_close()
        except Exception:
            log.exception("server_close_failed")
        try:
            server_thread.join(timeout=5)
        except Exception:
            log.exception("server_thread_join_failed")


if __name__ == "__main__":
    sys.exit(main())
