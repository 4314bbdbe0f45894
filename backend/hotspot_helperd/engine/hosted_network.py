"""
Shared-connection backend: `netsh wlan hostednetwork`.

netsh has no structured output; everything here is substring heuristics over
localized (English / Simplified Chinese) console text.
"""

import logging
from typing import Optional

from hotspot_helperd.engine.runner import (
    UTF8_CODEPAGE,
    CommandResult,
    CommandRunner,
    codepage_for,
    legacy_encoding,
    looks_garbled,
    run_command,
)
from hotspot_helperd.errors import ExternalToolError, ValidationError
from hotspot_helperd.profile import (
    BACKEND_SHARED_CONNECTION,
    PASSPHRASE_MAX_LEN,
    PASSPHRASE_MIN_LEN,
    HotspotProfile,
    passphrase_length_ok,
)

log = logging.getLogger("hotspot_helperd.engine.hosted_network")

NETSH_TIMEOUT_S = 15.0

# netsh sometimes exits 0 after a failed operation.
_FAILURE_MARKERS = (
    "failed",
    "couldn't be started",
    "not in the correct state",
    "未能",
    "失败",
    "不可用",
)

_NOT_SUPPORTED_MARKERS = (
    "not in the correct state",
    "not available",
    "组或资源的状态不是",
    "不可用",
)

NOT_SUPPORTED_HINT = (
    "Hint: this system or wireless driver may not support the hosted network "
    "(netsh wlan hostednetwork). Many Windows 10/11 drivers dropped it; switch "
    "exec_mode to os-tethering (Mobile Hotspot)."
)

_STATUS_KEYWORDS = ("status", "状态")
# Checked before the started tokens: "Not started" contains "started".
_STOPPED_TOKENS = ("not started", "stopped", "未启动", "已停止")
_STARTED_TOKENS = ("started", "已启动")


def looks_failed(output: str) -> bool:
    low = (output or "").lower()
    if any(m in low for m in _FAILURE_MARKERS):
        return True
    return "hosted network" in low and "not available" in low


def not_supported_hint(error_text: str) -> str:
    low = (error_text or "").lower()
    if any(m in low for m in _NOT_SUPPORTED_MARKERS):
        return NOT_SUPPORTED_HINT
    return ""


def parse_hosted_network_status(output: str) -> bool:
    """
    True when `netsh wlan show hostednetwork` reports the network as started.
    """
    for raw in (output or "").splitlines():
        low = raw.lower()
        for kw in _STATUS_KEYWORDS:
            idx = low.find(kw)
            if idx < 0:
                continue
            rest = low[idx + len(kw):]
            if any(t in rest for t in _STOPPED_TOKENS):
                return False
            if any(t in rest for t in _STARTED_TOKENS):
                return True

    # Approximate fallback for unrecognized layouts.
    low = (output or "").lower()
    for t in ("not started", "未启动"):
        low = low.replace(t, "")
    return any(t in low for t in _STARTED_TOKENS)


def _netsh_cmdline(arguments: str, codepage: Optional[int]) -> str:
    if codepage is None:
        return f"netsh.exe {arguments}"
    return f"cmd.exe /c chcp {codepage}>nul & netsh.exe {arguments}"


def _strip_quotes(value: str) -> str:
    return (value or "").replace('"', "")


def run_netsh(
    arguments: str,
    *,
    runner: CommandRunner = run_command,
    legacy: Optional[str] = None,
    timeout_s: float = NETSH_TIMEOUT_S,
) -> CommandResult:
    """
    Run netsh under a UTF-8 console; re-run once under the legacy code page when
    the decoded text looks garbled. The second result wins.
    """
    res = runner(_netsh_cmdline(arguments, UTF8_CODEPAGE), timeout_s=timeout_s, encoding="utf-8")
    if looks_garbled(res.stdout) or looks_garbled(res.stderr):
        enc = legacy_encoding(legacy)
        log.info("netsh_output_garbled retry_encoding=%s", enc)
        res = runner(_netsh_cmdline(arguments, codepage_for(enc)), timeout_s=timeout_s, encoding=enc)
    return res


def check_netsh_result(res: CommandResult, *, timeout_s: float = NETSH_TIMEOUT_S) -> str:
    out = res.output
    if res.timed_out:
        raise ExternalToolError(f"netsh timed out after {timeout_s:.0f}s", output=out)
    if res.exit_code != 0:
        raise ExternalToolError(out or "netsh failed", output=out, exit_code=res.exit_code)
    if looks_failed(out):
        raise ExternalToolError(out, output=out, exit_code=res.exit_code)
    return out


def validate_profile(profile: HotspotProfile) -> None:
    # Checked as sent: double quotes are stripped from both values.
    name = _strip_quotes(profile.name).strip()
    passphrase = _strip_quotes(profile.passphrase)
    if not name:
        raise ValidationError("hotspot name is empty")
    if not passphrase:
        raise ValidationError(
            "passphrase required: netsh hosted network needs a WPA2-PSK key; set an "
            f"{PASSPHRASE_MIN_LEN}-{PASSPHRASE_MAX_LEN} character passphrase or switch "
            "exec_mode to os-tethering"
        )
    if not passphrase_length_ok(passphrase):
        raise ValidationError(
            f"passphrase must be {PASSPHRASE_MIN_LEN}-{PASSPHRASE_MAX_LEN} characters"
        )


class HostedNetworkBackend:
    name = BACKEND_SHARED_CONNECTION

    def __init__(
        self,
        profile: HotspotProfile,
        *,
        runner: CommandRunner = run_command,
        legacy: Optional[str] = None,
    ):
        self.profile = profile
        self._runner = runner
        self._legacy = legacy

    def _netsh(self, arguments: str, *, display: Optional[str] = None) -> str:
        log.info("netsh_exec: netsh %s", display or arguments)
        res = run_netsh(arguments, runner=self._runner, legacy=self._legacy)
        return check_netsh_result(res)

    def set_enabled(self, enabled: bool) -> None:
        if not enabled:
            self._netsh("wlan stop hostednetwork")
            return

        validate_profile(self.profile)
        ssid = _strip_quotes(self.profile.name)
        key = _strip_quotes(self.profile.passphrase)
        self._netsh(
            f'wlan set hostednetwork mode=allow ssid="{ssid}" key="{key}"',
            display=f'wlan set hostednetwork mode=allow ssid="{ssid}" key="********"',
        )
        try:
            self._netsh("wlan start hostednetwork")
        except ExternalToolError as exc:
            hint = not_supported_hint(str(exc))
            if not hint:
                raise
            raise ExternalToolError(
                f"{exc}\n{hint}", output=exc.output, exit_code=exc.exit_code
            ) from exc

    def query_enabled(self) -> bool:
        return parse_hosted_network_status(self._netsh("wlan show hostednetwork"))
