import pytest

from hotspot_helperd.engine.runner import CommandResult
from hotspot_helperd.engine.tethering import (
    MUTATION_TIMEOUT_S,
    QUERY_TIMEOUT_S,
    TetheringBackend,
    TetheringState,
    build_query_script,
    build_set_script,
    check_powershell_result,
    parse_state,
    ps_literal,
)
from hotspot_helperd.errors import ExternalToolError, TetheringTimeoutError
from hotspot_helperd.profile import HotspotProfile

GUID = "5f1c2a9e-0d1b-4c33-9a51-3f7a2b1c9d00"


class FakeRunner:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def __call__(self, argv, *, timeout_s, encoding="utf-8"):
        self.calls.append((argv, timeout_s))
        return self.result


def _profile(passphrase="supersecret"):
    return HotspotProfile(name="VR-Link", passphrase=passphrase, backend="os-tethering", adapter_id=GUID)


def test_ps_literal_escapes_quotes():
    assert ps_literal("it's") == "'it''s'"
    assert ps_literal('say "hi"') == "'say hi'"
    assert ps_literal("") == "''"


def test_profile_resolution_order():
    script = build_query_script(GUID)
    bound = script.index("-ieq $targetGuid")
    internet = script.index("GetInternetConnectionProfile()")
    first = script.index("$profiles | Select-Object -First 1 };")
    assert bound < internet < first
    assert "throw 'No connection profile.'" in script
    assert f"$targetGuid='{GUID}'" in script


def test_enable_script_configures_best_effort_and_waits_for_on():
    script = build_set_script(True, GUID, "VR-Link", "supersecret")
    assert "$ssid='VR-Link';" in script
    assert "$key='supersecret';" in script
    assert "ConfigureAccessPointAsync($c) } catch { };" in script
    assert script.index("ConfigureAccessPointAsync") < script.index("StartTetheringAsync")
    assert "if($state -eq 1)" in script
    assert "-lt 30000" in script
    assert "Start-Sleep -Milliseconds 300" in script
    assert "Tethering start timed out. OperationalState=" in script


def test_disable_script_short_circuits_when_already_off():
    script = build_set_script(False, GUID, "VR-Link", "supersecret")
    assert "if($state0 -eq 0){ $state0; return };" in script
    assert script.index("if($state0 -eq 0)") < script.index("StopTetheringAsync")
    assert "supersecret" not in script
    assert "Tethering stop timed out" in script


def test_parse_state():
    assert parse_state("1\r\n") == TetheringState.ON
    assert parse_state("warning line\n0\n") == TetheringState.OFF
    assert parse_state("7") == TetheringState.UNKNOWN
    with pytest.raises(ExternalToolError):
        parse_state("")
    with pytest.raises(ExternalToolError):
        parse_state("not a number")


def test_poll_timeout_maps_to_tethering_timeout_error():
    res = CommandResult(
        exit_code=1,
        stdout="",
        stderr="Tethering start timed out. OperationalState=2\nAt line:1 char:1",
    )
    with pytest.raises(TetheringTimeoutError) as ei:
        check_powershell_result(res, timeout_s=MUTATION_TIMEOUT_S)
    assert ei.value.state == 2


def test_script_error_is_external_tool_error():
    res = CommandResult(exit_code=1, stdout="", stderr="No connection profile.")
    with pytest.raises(ExternalToolError, match="No connection profile"):
        check_powershell_result(res, timeout_s=QUERY_TIMEOUT_S)


def test_process_timeout():
    res = CommandResult(exit_code=None, stdout="", stderr="", timed_out=True)
    with pytest.raises(ExternalToolError, match="timed out after 35s"):
        check_powershell_result(res, timeout_s=MUTATION_TIMEOUT_S)


def test_query_enabled_uses_query_timeout():
    runner = FakeRunner(CommandResult(exit_code=0, stdout="1\n", stderr=""))
    assert TetheringBackend(_profile(), runner=runner).query_enabled() is True
    argv, timeout_s = runner.calls[0]
    assert argv[0] == "powershell.exe"
    assert timeout_s == QUERY_TIMEOUT_S


def test_in_transition_is_not_enabled():
    runner = FakeRunner(CommandResult(exit_code=0, stdout="2\n", stderr=""))
    assert TetheringBackend(_profile(), runner=runner).query_enabled() is False


def test_set_enabled_uses_mutation_timeout_and_allows_open_network():
    runner = FakeRunner(CommandResult(exit_code=0, stdout="1\n", stderr=""))
    TetheringBackend(_profile(passphrase=""), runner=runner).set_enabled(True)
    argv, timeout_s = runner.calls[0]
    assert timeout_s == MUTATION_TIMEOUT_S
    assert "StartTetheringAsync" in argv[-1]
    assert "$key='';" in argv[-1]
