import copy
import json
import logging
import os
import time
import uuid
from dataclasses import asdict
from http.server import BaseHTTPRequestHandler
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from hotspot_helperd.adapters.inventory import get_adapters
from hotspot_helperd.adapters.probe import probe
from hotspot_helperd.config import load_config, validate_config, write_config_file
from hotspot_helperd.errors import HotspotError
from hotspot_helperd.logging import get_log_tail
from hotspot_helperd.profile import HotspotProfile, normalize_adapter_id, normalize_backend

log = logging.getLogger("hotspot_helperd.api")

SERVER_VERSION = "hotspot-helperd/0.1"

# What clients may change on disk via /v1/config.
_CONFIG_MUTABLE_KEYS = {
    "hotspot_name",
    "hotspot_passphrase",
    "auto_manage",
    "bound_adapter_id",
    "exec_mode",
    "tick_interval_s",
    "status_poll_interval_s",
    "legacy_encoding",
}

_SENSITIVE_CONFIG_KEYS = {"hotspot_passphrase"}

_BOOL_KEYS = {"auto_manage"}
_FLOAT_KEYS = {"tick_interval_s", "status_poll_interval_s"}
_STR_KEYS = {"hotspot_name", "hotspot_passphrase", "bound_adapter_id", "exec_mode", "legacy_encoding"}

_COMPAT_ALIASES = {
    "ssid": "hotspot_name",
    "name": "hotspot_name",
    "passphrase": "hotspot_passphrase",
    "password": "hotspot_passphrase",
    "adapter_id": "bound_adapter_id",
    "backend": "exec_mode",
    "mode": "exec_mode",
}

_LOG_LIMIT_DEFAULT = 200


class APIHandler(BaseHTTPRequestHandler):
    server_version = SERVER_VERSION

    def log_message(self, format, *args):
        return

    def _reconciler(self):
        return getattr(self.server, "reconciler", None)

    def _parse_url(self) -> Tuple[str, Dict[str, str]]:
        s = urlsplit(self.path)
        qs_raw = parse_qs(s.query or "", keep_blank_values=True)
        qs: Dict[str, str] = {}
        for k, vals in qs_raw.items():
            if not vals:
                continue
            qs[k] = vals[0]
        return s.path or "/", qs

    def _qbool(self, qs: Dict[str, str], key: str, default: bool = False) -> bool:
        v = (qs.get(key) or "").strip().lower()
        if not v:
            return default
        return v in ("1", "true", "yes", "on", "y")

    def _env_token(self) -> str:
        return (os.environ.get("HOTSPOT_HELPER_API_TOKEN") or "").strip()

    def _get_req_token(self) -> str:
        t = (self.headers.get("X-Api-Token") or "").strip()
        if t:
            return t
        auth = (self.headers.get("Authorization") or "").strip()
        if auth.lower().startswith("bearer "):
            return auth.split(" ", 1)[1].strip()
        return ""

    def _is_authorized(self) -> bool:
        tok = self._env_token()
        if not tok:
            return True
        return self._get_req_token() == tok

    def _require_auth(self, cid: str) -> bool:
        if self._is_authorized():
            return True
        self._respond(
            401,
            self._envelope(
                correlation_id=cid,
                result_code="unauthorized",
                warnings=["missing_or_invalid_token"],
                data={"hint": "Set X-Api-Token header (or Authorization: Bearer <token>)"},
            ),
        )
        return False

    def _respond_raw(self, code: int, raw: bytes, content_type: str = "application/octet-stream"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(raw)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.end_headers()
        try:
            self.wfile.write(raw)
        except (BrokenPipeError, ConnectionResetError):
            return

    def _respond(self, code: int, payload: dict):
        raw = json.dumps(payload).encode("utf-8")
        self._respond_raw(code, raw, "application/json; charset=utf-8")

    def _envelope(self, *, correlation_id: str, result_code: str = "ok", data=None, warnings=None):
        return {
            "correlation_id": correlation_id,
            "result_code": result_code,
            "warnings": warnings or [],
            "data": data or {},
        }

    def _cid(self) -> str:
        cid = self.headers.get("X-Correlation-Id")
        return cid.strip() if cid and cid.strip() else str(uuid.uuid4())

    def _read_json_body(self) -> Tuple[Dict[str, Any], list]:
        warnings: list = []
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except Exception:
            length = 0

        if length <= 0:
            return {}, warnings

        if length > 64_000:
            warnings.append("body_too_large")
            return {}, warnings

        try:
            raw = self.rfile.read(length)
        except Exception:
            warnings.append("body_read_failed")
            return {}, warnings

        if not raw:
            return {}, warnings

        try:
            data = json.loads(raw.decode("utf-8", "replace"))
            if isinstance(data, dict):
                return data, warnings
            warnings.append("body_not_object")
            return {}, warnings
        except Exception:
            warnings.append("body_json_parse_failed")
            return {}, warnings

    def _filter_keys(self, data: Dict[str, Any], allow: set) -> Tuple[Dict[str, Any], list]:
        out: Dict[str, Any] = {}
        ignored: list = []
        for k, v in (data or {}).items():
            if k in allow:
                out[k] = v
            else:
                ignored.append(k)
        warnings: list = []
        if ignored:
            warnings.append("ignored_keys:" + ",".join(sorted(ignored)))
        return out, warnings

    def _apply_compat_aliases(self, cfg_in: Dict[str, Any]) -> Dict[str, Any]:
        """
        Accept the short keys older clients send and map them to canonical keys.
        Canonical keys win when both are present.
        """
        out = dict(cfg_in)
        for alias, canonical in _COMPAT_ALIASES.items():
            if alias in out:
                value = out.pop(alias)
                out.setdefault(canonical, value)
        return out

    def _coerce_config_types(self, d: Dict[str, Any]) -> Tuple[Dict[str, Any], list]:
        out: Dict[str, Any] = {}
        warnings: list = []

        def to_bool(v: Any) -> Optional[bool]:
            if isinstance(v, bool):
                return v
            if isinstance(v, (int, float)):
                return bool(v)
            if isinstance(v, str):
                s = v.strip().lower()
                if s in ("1", "true", "yes", "on", "y"):
                    return True
                if s in ("0", "false", "no", "off", "n", ""):
                    return False
            return None

        for k, v in d.items():
            if k in _BOOL_KEYS:
                b = to_bool(v)
                if b is None:
                    warnings.append(f"invalid_bool:{k}")
                    continue
                out[k] = b
            elif k in _FLOAT_KEYS:
                try:
                    out[k] = float(v)
                except Exception:
                    warnings.append(f"invalid_float:{k}")
            elif k in _STR_KEYS:
                if v is None:
                    v = ""
                if not isinstance(v, str):
                    warnings.append(f"invalid_str:{k}")
                    continue
                if k == "exec_mode":
                    mode = normalize_backend(v)
                    if mode is None:
                        warnings.append("invalid_exec_mode")
                        continue
                    v = mode
                elif k == "bound_adapter_id":
                    v = normalize_adapter_id(v)
                elif k == "hotspot_name":
                    v = v.strip()
                out[k] = v
            else:
                out[k] = v
        return out, warnings

    def _config_view(self, *, include_secrets: bool) -> Dict[str, Any]:
        cfg = load_config()
        out = copy.deepcopy(cfg)
        redacted = False
        if not include_secrets:
            for k in _SENSITIVE_CONFIG_KEYS:
                if out.get(k):
                    out[k] = ""
                    redacted = True
        out["_hotspot_passphrase_redacted"] = redacted
        return out

    def _status_view(self) -> Dict[str, Any]:
        rec = self._reconciler()
        return {
            "reconciler": rec.snapshot() if rec is not None else None,
            "config": self._config_view(include_secrets=False),
            "ts": int(time.time()),
        }

    def _save_config(self, cid: str, updates: Dict[str, Any], warnings: list):
        preview = load_config()
        preview.update(updates)
        errors = validate_config(preview)
        if errors:
            self._respond(
                400,
                self._envelope(correlation_id=cid, result_code="invalid_config", warnings=warnings + errors),
            )
            return

        try:
            merged = write_config_file(updates)
        except Exception as e:
            log.exception("config_write_failed")
            self._respond(
                500,
                self._envelope(
                    correlation_id=cid,
                    result_code="config_write_failed",
                    warnings=warnings + [str(e)],
                ),
            )
            return

        log.info("config_saved keys=%s", ",".join(sorted(updates)), extra={"correlation_id": cid})
        rec = self._reconciler()
        if rec is not None:
            rec.on_config_saved(merged)

        self._respond(
            200,
            self._envelope(
                correlation_id=cid,
                result_code="config_saved",
                data=self._config_view(include_secrets=False),
                warnings=warnings,
            ),
        )

    def _handle_config_update(self, cid: str, body: Dict[str, Any], body_warnings: list):
        if isinstance(body.get("config"), dict):
            cfg_in = body.get("config")
        else:
            cfg_in = body

        cfg_in = self._apply_compat_aliases(cfg_in or {})
        filtered, warnings = self._filter_keys(cfg_in, _CONFIG_MUTABLE_KEYS)
        warnings = body_warnings + warnings
        filtered, w_coerce = self._coerce_config_types(filtered)
        warnings += w_coerce

        if not filtered:
            self._respond(
                400,
                self._envelope(
                    correlation_id=cid,
                    result_code="invalid_request",
                    warnings=warnings + ["no_mutable_keys_provided"],
                    data={"allowed_keys": sorted(_CONFIG_MUTABLE_KEYS)},
                ),
            )
            return

        self._save_config(cid, filtered, warnings)

    def _handle_bind(self, cid: str, body: Dict[str, Any], body_warnings: list):
        adapter_id = normalize_adapter_id(body.get("adapter_id") or body.get("id"))
        if not adapter_id:
            self._respond(
                400,
                self._envelope(
                    correlation_id=cid,
                    result_code="invalid_request",
                    warnings=body_warnings + ["adapter_id_required"],
                ),
            )
            return
        log.info("adapter_bind adapter=%s", adapter_id, extra={"correlation_id": cid})
        self._save_config(cid, {"bound_adapter_id": adapter_id}, body_warnings)

    def _probe_view(self) -> Dict[str, Any]:
        profile = HotspotProfile.from_config(load_config())
        result = probe(profile.adapter_id)
        out = asdict(result)
        out["adapter_id"] = profile.adapter_id
        return out

    def do_GET(self):
        cid = self._cid()
        path, qs = self._parse_url()

        if path != "/healthz":
            log.debug("request", extra={"correlation_id": cid, "method": "GET", "path": self.path})

        if path == "/healthz":
            self._respond_raw(200, b"ok\n", "text/plain; charset=utf-8")
            return

        if not self._require_auth(cid):
            return

        if path == "/v1/status":
            self._respond(200, self._envelope(correlation_id=cid, data=self._status_view()))
            return

        if path == "/v1/config":
            include_secrets = self._qbool(qs, "include_secrets", False)
            self._respond(200, self._envelope(correlation_id=cid, data=self._config_view(include_secrets=include_secrets)))
            return

        if path == "/v1/adapters":
            try:
                data = get_adapters()
            except HotspotError as e:
                self._respond(
                    502,
                    self._envelope(correlation_id=cid, result_code="adapter_inventory_failed", warnings=[str(e)]),
                )
                return
            self._respond(200, self._envelope(correlation_id=cid, data=data))
            return

        if path == "/v1/probe":
            try:
                data = self._probe_view()
            except HotspotError as e:
                self._respond(
                    502,
                    self._envelope(correlation_id=cid, result_code="probe_failed", warnings=[str(e)]),
                )
                return
            self._respond(200, self._envelope(correlation_id=cid, data=data))
            return

        if path == "/v1/logs":
            try:
                limit = max(0, min(2000, int(qs.get("limit", _LOG_LIMIT_DEFAULT))))
            except Exception:
                limit = _LOG_LIMIT_DEFAULT
            pw = load_config().get("hotspot_passphrase")
            lines = get_log_tail(limit=limit, secrets=[pw] if isinstance(pw, str) else [])
            self._respond(200, self._envelope(correlation_id=cid, data={"lines": lines}))
            return

        self._respond(
            404,
            self._envelope(correlation_id=cid, result_code="not_found", warnings=["unknown_endpoint"]),
        )

    def do_POST(self):
        cid = self._cid()
        path, _qs = self._parse_url()
        log.info("request", extra={"correlation_id": cid, "method": "POST", "path": self.path})

        if not self._require_auth(cid):
            return

        body, body_warnings = self._read_json_body()

        if path == "/v1/config":
            self._handle_config_update(cid, body, body_warnings)
            return

        if path == "/v1/adapters/bind":
            self._handle_bind(cid, body, body_warnings)
            return

        if path == "/v1/reconcile":
            rec = self._reconciler()
            if rec is None:
                self._respond(503, self._envelope(correlation_id=cid, result_code="reconciler_unavailable"))
                return
            ran = rec.tick()
            self._respond(
                200,
                self._envelope(
                    correlation_id=cid,
                    result_code="ok" if ran else "tick_skipped",
                    data=self._status_view(),
                ),
            )
            return

        self._respond(
            404,
            self._envelope(correlation_id=cid, result_code="not_found", warnings=["unknown_endpoint"]),
        )
