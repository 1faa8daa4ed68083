"""Running PowerShell scripts with timeouts, output limits and result caching."""

from __future__ import annotations

import asyncio
import base64
import locale
import logging
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024
MAX_LOG_CHARS = 4096
PS_ENCODING_PREFIX = (
    "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8\n"
    "$OutputEncoding = [System.Text.Encoding]::UTF8\n"
)
_READ_CHUNK = 8192
_REQUIRED_MODULES = ("CimCmdlets", "Microsoft.PowerShell.Management")


class PowerShellError(RuntimeError):
    """A PowerShell command could not be run or reported failure."""


@dataclass
class PowerShellEnvironmentStatus:
    available: bool
    missing_modules: list[str] = field(default_factory=list)


def encode_powershell_command(command: str) -> str:
    """Encode a script for ``-EncodedCommand``: base64 of its UTF-16LE bytes."""
    return base64.b64encode(command.encode("utf-16-le", errors="surrogatepass")).decode(
        "ascii"
    )


def sanitize_for_log(command: str) -> str:
    """Put a script on one line and cut it short for logging."""
    sanitized = command.replace("\r", "\\r").replace("\n", "\\n")
    if len(sanitized) > MAX_LOG_CHARS:
        sanitized = sanitized[:MAX_LOG_CHARS] + "..."
    return sanitized


def split_batch_output(output: str, separator: str, expected: int) -> list[str]:
    """Split batch output at ``separator`` into ``expected`` trimmed parts."""
    parts = output.split(separator)
    if len(parts) < expected + 2:
        raise PowerShellError("PowerShell batch output missing separators")
    parts = parts[1:-1]
    if len(parts) != expected:
        raise PowerShellError(
            f"PowerShell batch output count mismatch: expected {expected}, "
            f"got {len(parts)}"
        )
    return [part.strip() for part in parts]


def decode_utf16(data: bytes, little_endian: bool) -> str:
    """Decode UTF-16, dropping a trailing odd byte and replacing bad units."""
    even = data[: len(data) - len(data) % 2]
    codec = "utf-16-le" if little_endian else "utf-16-be"
    return even.decode(codec, errors="replace")


def _decode_with_system_codepage(data: bytes) -> str | None:
    for encoding in (locale.getpreferredencoding(False), "oem", "mbcs"):
        try:
            text = data.decode(encoding, errors="replace")
        except LookupError:
            continue
        if text:
            return text
    return None


def decode_output(data: bytes) -> str:
    """Turn raw process output into text, guessing between UTF-16 and UTF-8."""
    if not data:
        return ""
    if data.startswith(b"\xff\xfe"):
        return decode_utf16(data, True)
    if data.startswith(b"\xfe\xff"):
        return decode_utf16(data, False)
    if 0 in data[1:9]:
        decoded = decode_utf16(data, True)
        if decoded:
            return decoded
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    if sys.platform == "win32":
        decoded = _decode_with_system_codepage(data)
        if decoded is not None:
            return decoded
    return data.decode("utf-8", errors="replace")


async def _read_limited(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read a stream to its end, keeping at most ``limit`` bytes."""
    buffer = bytearray()
    total = 0
    while chunk := await stream.read(_READ_CHUNK):
        total += len(chunk)
        if len(buffer) < limit:
            buffer += chunk[: limit - len(buffer)]
    return bytes(buffer), total > limit


class PowerShellExecutor:
    """Runs PowerShell scripts and caches their output for a while.

    Caching is off when ``use_cache`` is false or ``cache_ttl_seconds`` is 0.
    """

    def __init__(
        self,
        executable: str,
        timeout_seconds: int,
        cache_ttl_seconds: int,
        use_cache: bool,
    ) -> None:
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cache_enabled = bool(use_cache and cache_ttl_seconds > 0)
        self._cache: dict[str, tuple[str, float]] = {}
        self._cache_lock = threading.Lock()

    def _cached(self, key: str) -> str | None:
        if not self.cache_enabled:
            return None
        with self._cache_lock:
            entry = self._cache.get(key)
        if entry is not None and time.monotonic() - entry[1] < self.cache_ttl_seconds:
            return entry[0]
        return None

    async def execute(self, command: str) -> str:
        """Run a script and return its standard output."""
        cache_key = command
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        script = PS_ENCODING_PREFIX + command
        log.debug("Executing PowerShell command: %s", sanitize_for_log(script))

        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                "-NoProfile",
                "-NonInteractive",
                "-EncodedCommand",
                encode_powershell_command(script),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PowerShellError("Failed to spawn PowerShell process") from exc

        stdout_task = asyncio.create_task(_read_limited(process.stdout, MAX_OUTPUT_BYTES))
        stderr_task = asyncio.create_task(_read_limited(process.stderr, MAX_OUTPUT_BYTES))

        try:
            returncode = await asyncio.wait_for(process.wait(), self.timeout_seconds)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            stdout_task.cancel()
            stderr_task.cancel()
            await asyncio.gather(stdout_task, stderr_task, return_exceptions=True)
            raise PowerShellError(
                f"PowerShell command timed out after {self.timeout_seconds}s"
            ) from None

        stdout_bytes, stdout_truncated = await stdout_task
        stderr_bytes, stderr_truncated = await stderr_task

        if stdout_truncated:
            log.warning("PowerShell stdout truncated to %d bytes", MAX_OUTPUT_BYTES)
        if stderr_truncated:
            log.warning("PowerShell stderr truncated to %d bytes", MAX_OUTPUT_BYTES)

        stdout_text = decode_output(stdout_bytes)
        stderr_text = decode_output(stderr_bytes).strip()

        if stderr_text:
            log.debug("PowerShell stderr: %s", sanitize_for_log(stderr_text))

        if returncode != 0:
            message = stderr_text or "PowerShell command failed with empty stderr"
            code = str(returncode) if returncode >= 0 else "terminated"
            raise PowerShellError(f"PowerShell command failed (exit {code}): {message}")

        if self.cache_enabled:
            with self._cache_lock:
                self._cache[cache_key] = (stdout_text, time.monotonic())

        return stdout_text

    async def execute_batch(self, commands: list[str]) -> list[str]:
        """Run several commands in one process and return each one's output."""
        if not commands:
            return []

        separator = f"__PS_BATCH_{time.time_ns()}__"
        escaped = separator.replace("'", "''")
        lines = [
            PS_ENCODING_PREFIX,
            "$ErrorActionPreference = 'Continue'\n",
            "$ProgressPreference = 'SilentlyContinue'\n",
            "$WarningPreference = 'SilentlyContinue'\n",
            f"$__ps_batch_sep = '{escaped}'\n",
        ]
        for command in commands:
            lines.append("Write-Output $__ps_batch_sep\n")
            lines.append(f"{command}\n")
        lines.append("Write-Output $__ps_batch_sep\n")

        output = await self.execute("".join(lines))
        return split_batch_output(output, separator, len(commands))

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    @staticmethod
    def check_environment(executable: str) -> PowerShellEnvironmentStatus:
        """Check that PowerShell starts and has the modules the monitor needs."""
        try:
            version_check = subprocess.run(
                [
                    executable,
                    "-NoProfile",
                    "-NonInteractive",
                    "-Command",
                    "$PSVersionTable.PSVersion.ToString()",
                ],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError:
            return PowerShellEnvironmentStatus(available=False)
        if version_check.returncode != 0:
            return PowerShellEnvironmentStatus(available=False)

        module_script = (
            "$required = @('" + "','".join(_REQUIRED_MODULES) + "');"
            "$missing = $required | Where-Object { -not (Get-Module -ListAvailable $_) };"
            "$missing"
        )
        try:
            module_check = subprocess.run(
                [executable, "-NoProfile", "-NonInteractive", "-Command", module_script],
                capture_output=True,
                check=False,
            )
        except OSError:
            module_check = None

        if module_check is not None and module_check.returncode == 0:
            text = module_check.stdout.decode("utf-8", errors="replace")
            missing = [line.strip() for line in text.splitlines() if line.strip()]
        else:
            missing = list(_REQUIRED_MODULES)

        return PowerShellEnvironmentStatus(available=True, missing_modules=missing)