import locale
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Union

# Hide the console window spawned for every child on Windows.
_CREATIONFLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)

UTF8_CODEPAGE = 65001


@dataclass
class CommandResult:
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    encoding: str = "utf-8"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


class CommandRunner(Protocol):
    def __call__(
        self,
        argv: Union[str, Sequence[str]],
        *,
        timeout_s: float,
        encoding: str = "utf-8",
    ) -> CommandResult:
        ...


def _decode(raw: Union[bytes, str, None], encoding: str) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        text = raw
    else:
        try:
            text = raw.decode(encoding, errors="replace")
        except LookupError:
            text = raw.decode("utf-8", errors="replace")
    return text.replace("\0", "")


def run_command(
    argv: Union[str, Sequence[str]],
    *,
    timeout_s: float,
    encoding: str = "utf-8",
) -> CommandResult:
    """
    Run one command to completion (or timeout) and decode both streams.

    Never raises for process-level failures: a missing binary or an expired
    timeout come back as a CommandResult with exit_code None.
    """
    cmd: Union[str, List[str]] = argv if isinstance(argv, str) else list(argv)
    try:
        p = subprocess.run(
            cmd,
            capture_output=True,
            timeout=timeout_s,
            check=False,
            creationflags=_CREATIONFLAGS,
        )
    except subprocess.TimeoutExpired as exc:
        return CommandResult(
            exit_code=None,
            stdout=_decode(exc.stdout, encoding),
            stderr=_decode(exc.stderr, encoding),
            timed_out=True,
            encoding=encoding,
        )
    except OSError as exc:
        return CommandResult(
            exit_code=None,
            stdout="",
            stderr=f"{type(exc).__name__}: {exc}",
            encoding=encoding,
        )
    return CommandResult(
        exit_code=p.returncode,
        stdout=_decode(p.stdout, encoding),
        stderr=_decode(p.stderr, encoding),
        encoding=encoding,
    )


def _is_cjk(ch: str) -> bool:
    return 0x4E00 <= ord(ch) <= 0x9FFF


def looks_garbled(text: str) -> bool:
    """
    Approximate: a decode-failure marker, or non-ASCII text with no CJK
    ideographs in it (what a GBK console decoded as UTF-8 tends to look like).
    """
    if not text:
        return False
    if "\ufffd" in text:
        return True
    has_non_ascii = any(ord(ch) > 127 for ch in text)
    has_cjk = any(_is_cjk(ch) for ch in text)
    return has_non_ascii and not has_cjk


def legacy_encoding(override: Optional[str] = None) -> str:
    """
    Encoding of the system's legacy (non-Unicode) code page, e.g. "cp936".
    """
    if override and override.strip():
        return override.strip()
    enc = (locale.getpreferredencoding(False) or "").strip()
    if not enc or enc.lower().replace("-", "") in ("utf8", "cp65001"):
        return "cp936"
    return enc


def codepage_for(encoding: str) -> Optional[int]:
    """
    Console code page number matching a Python codec name, None if unknown.
    """
    enc = encoding.strip().lower().replace("_", "").replace("-", "")
    if enc in ("utf8", "cp65001"):
        return UTF8_CODEPAGE
    if enc in ("gbk", "gb2312"):
        return 936
    if enc.startswith("cp") and enc[2:].isdigit():
        return int(enc[2:])
    return None


def powershell_argv(script: str) -> List[str]:
    return [
        "powershell.exe",
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-Command",
        script,
    ]
