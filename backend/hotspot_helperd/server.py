import ipaddress
import logging
import os
from http.server import ThreadingHTTPServer
from typing import Optional

from hotspot_helperd.api import APIHandler

log = logging.getLogger("hotspot_helperd.server")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8733


def _is_loopback(h: str) -> bool:
    h = (h or "").strip().lower()
    if h in ("127.0.0.1", "localhost", "::1"):
        return True
    try:
        return ipaddress.ip_address(h).is_loopback
    except Exception:
        return False


def build_server(reconciler=None, host: Optional[str] = None, port: Optional[int] = None) -> ThreadingHTTPServer:
    host = (host or os.environ.get("HOTSPOT_HELPER_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST
    if port is None:
        port_raw = (os.environ.get("HOTSPOT_HELPER_PORT") or str(DEFAULT_PORT)).strip()
        try:
            port = int(port_raw)
        except Exception:
            port = DEFAULT_PORT

    if not _is_loopback(host) and not (os.environ.get("HOTSPOT_HELPER_API_TOKEN") or "").strip():
        log.error("refusing to bind non-loopback without HOTSPOT_HELPER_API_TOKEN")
        raise SystemExit(1)

    server = ThreadingHTTPServer((host, port), APIHandler)
    server.daemon_threads = True
    server.reconciler = reconciler
    log.info("listening", extra={"bind": f"http://{host}:{port}"})
    return server
