"""
OS-tethering backend: Windows Mobile Hotspot (NetworkOperatorTetheringManager).

There is no in-process WinRT binding, so every call runs a short PowerShell
script and reads back either the operational state (an int on stdout) or the
thrown error text (stderr).
"""

import enum
import logging
import re
from typing import List

from hotspot_helperd.engine.runner import (
    CommandResult,
    CommandRunner,
    powershell_argv,
    run_command,
)
from hotspot_helperd.errors import ExternalToolError, TetheringTimeoutError
from hotspot_helperd.profile import BACKEND_OS_TETHERING, HotspotProfile

log = logging.getLogger("hotspot_helperd.engine.tethering")

QUERY_TIMEOUT_S = 15.0
MUTATION_TIMEOUT_S = 35.0
POLL_INTERVAL_MS = 300
POLL_TIMEOUT_MS = 30000

_TIMEOUT_RE = re.compile(r"timed out\.\s*OperationalState=(\d+)", re.IGNORECASE)


class TetheringState(enum.IntEnum):
    OFF = 0
    ON = 1
    IN_TRANSITION = 2
    UNKNOWN = 3


_PREAMBLE = (
    "$ErrorActionPreference='Stop';"
    "Add-Type -AssemblyName System.Runtime.WindowsRuntime;"
    "$t=[Windows.Networking.NetworkOperators.NetworkOperatorTetheringManager,"
    "Windows.Networking.NetworkOperators,ContentType=WindowsRuntime];"
    "$ni=[Windows.Networking.Connectivity.NetworkInformation,"
    "Windows.Networking.Connectivity,ContentType=WindowsRuntime];"
)

# Bound adapter first, then the internet profile, then whatever exists.
_RESOLVE_MANAGER = (
    "$profiles=@($ni::GetConnectionProfiles());"
    "$p=$null;"
    "if($targetGuid -ne ''){ $p=$profiles | Where-Object { $_.NetworkAdapter -ne $null -and "
    "$_.NetworkAdapter.NetworkAdapterId.ToString() -ieq $targetGuid } | Select-Object -First 1 };"
    "if($p -eq $null){ $p=$ni::GetInternetConnectionProfile() };"
    "if($p -eq $null){ $p=$profiles | Select-Object -First 1 };"
    "if($p -eq $null){ throw 'No connection profile.' };"
    "$m=$t::CreateFromConnectionProfile($p);"
)


def ps_literal(value: str) -> str:
    """Single-quoted PowerShell string literal; double quotes are dropped."""
    return "'" + (value or "").replace('"', "").replace("'", "''") + "'"


def _wait_for_state(target: TetheringState, verb: str) -> str:
    return (
        "$sw=[Diagnostics.Stopwatch]::StartNew();"
        f"while($sw.ElapsedMilliseconds -lt {POLL_TIMEOUT_MS}){{"
        "  $state=[int]$m.TetheringOperationalState;"
        f"  if($state -eq {int(target)}){{ $state; return }};"
        f"  Start-Sleep -Milliseconds {POLL_INTERVAL_MS};"
        "};"
        "$state=[int]$m.TetheringOperationalState;"
        f"throw ('Tethering {verb} timed out. OperationalState=' + $state)"
    )


def build_query_script(adapter_id: str) -> str:
    return (
        _PREAMBLE
        + f"$targetGuid={ps_literal(adapter_id)};"
        + _RESOLVE_MANAGER
        + "[int]$m.TetheringOperationalState"
    )


def build_set_script(enabled: bool, adapter_id: str, ssid: str, passphrase: str) -> str:
    parts: List[str] = [
        _PREAMBLE,
        f"$targetGuid={ps_literal(adapter_id)};",
        _RESOLVE_MANAGER,
        "$state0=[int]$m.TetheringOperationalState;",
    ]
    if enabled:
        parts.append(f"$ssid={ps_literal(ssid)};")
        parts.append(f"$key={ps_literal(passphrase)};")
        # Best effort: some drivers refuse reconfiguration but still start.
        parts.append(
            "try { $c=$m.GetCurrentAccessPointConfiguration();"
            " if($ssid -ne ''){ $c.Ssid=$ssid };"
            " if($key -ne ''){ $c.Passphrase=$key };"
            " $null=$m.ConfigureAccessPointAsync($c) } catch { };"
        )
        parts.append("$null=$m.StartTetheringAsync();")
        parts.append(_wait_for_state(TetheringState.ON, "start"))
    else:
        parts.append(f"if($state0 -eq {int(TetheringState.OFF)}){{ $state0; return }};")
        parts.append("$null=$m.StopTetheringAsync();")
        parts.append(_wait_for_state(TetheringState.OFF, "stop"))
    return "".join(parts)


def parse_state(stdout: str) -> TetheringState:
    lines = [ln.strip() for ln in (stdout or "").splitlines() if ln.strip()]
    if not lines:
        raise ExternalToolError("unable to parse tethering state: empty output", output=stdout)
    try:
        value = int(lines[-1])
    except ValueError:
        raise ExternalToolError(
            f"unable to parse tethering state: {lines[-1]}", output=stdout
        ) from None
    try:
        return TetheringState(value)
    except ValueError:
        return TetheringState.UNKNOWN


def check_powershell_result(res: CommandResult, *, timeout_s: float) -> str:
    if res.timed_out:
        raise ExternalToolError(
            f"powershell timed out after {timeout_s:.0f}s", output=res.output
        )
    if res.exit_code != 0:
        err = res.stderr.strip() or res.stdout.strip() or "powershell failed"
        m = _TIMEOUT_RE.search(err)
        if m:
            raise TetheringTimeoutError(err, state=int(m.group(1)))
        raise ExternalToolError(err, output=res.output, exit_code=res.exit_code)
    return res.stdout


class TetheringBackend:
    name = BACKEND_OS_TETHERING

    def __init__(self, profile: HotspotProfile, *, runner: CommandRunner = run_command):
        self.profile = profile
        self._runner = runner

    def _run(self, script: str, timeout_s: float) -> str:
        res = self._runner(powershell_argv(script), timeout_s=timeout_s, encoding="utf-8")
        return check_powershell_result(res, timeout_s=timeout_s)

    def query_state(self) -> TetheringState:
        out = self._run(build_query_script(self.profile.adapter_id), QUERY_TIMEOUT_S)
        return parse_state(out)

    def query_enabled(self) -> bool:
        return self.query_state() == TetheringState.ON

    def set_enabled(self, enabled: bool) -> None:
        log.info(
            "tethering_%s adapter=%s",
            "start" if enabled else "stop",
            self.profile.adapter_id or "default",
        )
        script = build_set_script(
            enabled,
            self.profile.adapter_id,
            self.profile.name,
            self.profile.passphrase,
        )
        self._run(script, MUTATION_TIMEOUT_S)
