"""Client for the Ollama command-line tool and its saved chat logs."""

from __future__ import annotations

import asyncio
import json
import subprocess
import sys
import time
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path

import tomli_w

from tuiplus.ollama_parsing import (
    build_log_filename,
    chat_log_meta_path,
    extract_last_prompt_from_lines,
    find_column,
    format_log_timestamp,
    format_mb_as_gb,
    is_cloud_model,
    normalize_size,
    parse_log_filename,
    parse_model_params_from_name,
    split_columns,
)

_DEFAULT_LOG_DIR = Path("logs") / "ollama"


class OllamaError(RuntimeError):
    """An Ollama command could not be run or reported failure."""


@dataclass
class OllamaModel:
    name: str
    size_bytes: int
    size_display: str
    params_value: float | None
    params_unit: str | None
    params_display: str
    modified: str
    parameters: str | None = None
    quantization: str | None = None
    family: str | None = None
    format: str | None = None


@dataclass
class RunningModel:
    name: str
    size_bytes: int
    size_display: str
    params_value: float | None
    params_unit: str | None
    params_display: str
    processor: str
    until: str | None
    gpu_memory_mb: int | None = None
    gpu_memory_display: str = "-"


@dataclass
class ActivityLogEntry:
    timestamp: int
    action: str
    details: str
    success: bool


@dataclass
class ChatLogEntry:
    model: str
    ended_at: int
    ended_at_display: str
    path: str
    last_prompt: str


@dataclass
class ChatLogMetadata:
    model: str
    ended_at: int
    ended_at_display: str
    last_user_prompt: str
    message_count: int
    total_turns: int
    paused_at: int | None = None
    paused_at_display: str | None = None


@dataclass
class OllamaData:
    available: bool
    models: list[OllamaModel] = field(default_factory=list)
    running_models: list[RunningModel] = field(default_factory=list)
    activity_log: list[ActivityLogEntry] = field(default_factory=list)
    chat_logs: list[ChatLogEntry] = field(default_factory=list)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _text_lines(content: str) -> list[str]:
    lines = [line.removesuffix("\r") for line in content.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _non_blank_lines(output: str) -> list[str]:
    return [line for line in _text_lines(output) if line.strip()]


def _query_nvidia_smi_processes() -> dict[int, int]:
    """GPU memory in MB used by each compute process, keyed by PID."""
    try:
        result = subprocess.run(
            [
                "nvidia-smi",
                "--query-compute-apps=pid,used_memory",
                "--format=csv,noheader,nounits",
            ],
            capture_output=True,
            check=False,
        )
    except OSError:
        return {}
    if result.returncode != 0:
        return {}
    usage: dict[int, int] = {}
    for line in _text_lines(_decode(result.stdout)):
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            memory_mb = int(parts[1])
        except ValueError:
            continue
        if pid < 0 or memory_mb < 0:
            continue
        usage[pid] = memory_mb
    return usage


def _query_process_command_lines(pids: list[int]) -> dict[int, str]:
    """Command lines of the given processes; only available on Windows."""
    if sys.platform != "win32" or not pids:
        return {}
    process_filter = " or ".join(f"ProcessId={pid}" for pid in pids)
    command = (
        f'Get-CimInstance Win32_Process -Filter "{process_filter}" '
        "| Select-Object ProcessId,CommandLine | ConvertTo-Json -Compress"
    )
    try:
        result = subprocess.run(
            ["powershell", "-NoProfile", "-Command", command],
            capture_output=True,
            check=False,
        )
    except OSError:
        return {}
    if result.returncode != 0:
        return {}
    try:
        parsed = json.loads(_decode(result.stdout).strip())
        entries = parsed if isinstance(parsed, list) else [parsed]
        return {
            int(entry["ProcessId"]): entry["CommandLine"]
            for entry in entries
            if entry.get("CommandLine") is not None
        }
    except (ValueError, KeyError, TypeError, AttributeError):
        return {}


def _attach_gpu_memory(running: list[RunningModel]) -> None:
    gpu_processes = _query_nvidia_smi_processes()
    if not gpu_processes:
        for model in running:
            if is_cloud_model(model.name):
                model.gpu_memory_display = "cloud"
        return

    command_lines = _query_process_command_lines(list(gpu_processes))
    for model in running:
        if is_cloud_model(model.name):
            model.gpu_memory_display = "cloud"
            model.gpu_memory_mb = None
            continue
        name_lower = model.name.lower()
        total_mb = sum(
            memory_mb
            for pid, memory_mb in gpu_processes.items()
            if name_lower in command_lines.get(pid, "").lower()
        )
        if total_mb > 0:
            model.gpu_memory_mb = total_mb
            model.gpu_memory_display = format_mb_as_gb(total_mb)
        else:
            model.gpu_memory_mb = None
            model.gpu_memory_display = "-"


class OllamaClient:
    """Drives the ``ollama`` executable and manages chat log files."""

    def __init__(
        self, ollama_path: str | None = None, log_dir: str | Path | None = None
    ) -> None:
        self.ollama_path = ollama_path or "ollama"
        self.log_dir = Path(log_dir) if log_dir is not None else _DEFAULT_LOG_DIR

    async def _run(self, *args: str) -> subprocess.CompletedProcess[bytes]:
        return await asyncio.to_thread(
            subprocess.run,
            [self.ollama_path, *args],
            capture_output=True,
            check=False,
        )

    async def _run_checked(self, action: str, failure: str, *args: str) -> str:
        try:
            result = await self._run(*args)
        except OSError as exc:
            raise OllamaError(f"Failed to execute ollama {action}") from exc
        if result.returncode != 0:
            raise OllamaError(f"{failure}: {_decode(result.stderr)}")
        return _decode(result.stdout)

    async def collect_data(self) -> OllamaData:
        """Availability, installed and running models, and saved chat logs."""
        if not await self.check_availability():
            return OllamaData(available=False)
        try:
            models = await self.list_models()
        except (OllamaError, OSError):
            models = []
        try:
            running = await self.list_running()
        except (OllamaError, OSError):
            running = []
        try:
            chat_logs = self.list_chat_logs()
        except (OllamaError, OSError):
            chat_logs = []
        return OllamaData(
            available=True,
            models=models,
            running_models=running,
            chat_logs=chat_logs,
        )

    async def check_availability(self) -> bool:
        try:
            result = await self._run("--version")
        except OSError:
            return False
        return result.returncode == 0

    async def list_models(self) -> list[OllamaModel]:
        try:
            result = await self._run("list")
        except OSError as exc:
            raise OllamaError("Failed to execute ollama list") from exc
        if result.returncode != 0:
            return []
        return self.parse_model_list(_decode(result.stdout))

    def parse_model_list(self, output: str) -> list[OllamaModel]:
        """Parse the table printed by ``ollama list``."""
        lines = _non_blank_lines(output)
        if not lines:
            return []
        headers = split_columns(lines[0])
        name_idx = find_column(headers, "NAME") or 0
        size_idx = find_column(headers, "SIZE")
        size_idx = 2 if size_idx is None else size_idx
        modified_idx = find_column(headers, "MODIFIED")
        modified_idx = 3 if modified_idx is None else modified_idx

        models = []
        for line in lines[1:]:
            cols = split_columns(line)
            if len(cols) <= name_idx:
                continue
            name = cols[name_idx].strip()
            if not name:
                continue
            size_raw = cols[size_idx] if size_idx < len(cols) else "-"
            size_display, size_bytes = normalize_size(size_raw)
            if modified_idx < len(cols):
                modified = cols[modified_idx].strip()
            elif len(cols) > size_idx + 1:
                modified = " ".join(cols[size_idx + 1:]).strip()
            else:
                modified = ""
            value, unit, display = parse_model_params_from_name(name)
            models.append(
                OllamaModel(
                    name=name,
                    size_bytes=size_bytes,
                    size_display=size_display,
                    params_value=value,
                    params_unit=unit,
                    params_display=display,
                    modified=modified,
                )
            )
        return models

    async def list_running(self) -> list[RunningModel]:
        try:
            result = await self._run("ps")
        except OSError as exc:
            raise OllamaError("Failed to execute ollama ps") from exc
        if result.returncode != 0:
            return []
        running = self.parse_running_models(_decode(result.stdout))
        await asyncio.to_thread(_attach_gpu_memory, running)
        return running

    def parse_running_models(self, output: str) -> list[RunningModel]:
        """Parse the table printed by ``ollama ps``."""
        lines = _non_blank_lines(output)
        if not lines:
            return []
        headers = split_columns(lines[0])
        name_idx = find_column(headers, "NAME") or 0
        size_idx = find_column(headers, "SIZE")
        size_idx = 2 if size_idx is None else size_idx
        processor_idx = find_column(headers, "PROCESSOR")
        until_idx = find_column(headers, "UNTIL")

        def column(cols: list[str], idx: int | None) -> str:
            return cols[idx].strip() if idx is not None and idx < len(cols) else ""

        running = []
        for line in lines[1:]:
            cols = split_columns(line)
            if len(cols) <= name_idx:
                continue
            name = cols[name_idx].strip()
            if not name:
                continue
            size_raw = cols[size_idx] if size_idx < len(cols) else "-"
            size_display, size_bytes = normalize_size(size_raw)
            processor = column(cols, processor_idx) or "Unknown"
            until = column(cols, until_idx)
            value, unit, display = parse_model_params_from_name(name)
            running.append(
                RunningModel(
                    name=name,
                    size_bytes=size_bytes,
                    size_display=size_display,
                    params_value=value,
                    params_unit=unit,
                    params_display=display,
                    processor=processor,
                    until=until if until and until != "-" else None,
                )
            )
        return running

    async def show_model(self, model_name: str) -> str:
        return await self._run_checked("show", "Failed to show model", "show", model_name)

    async def run_model(self, model_name: str, prompt: str = "") -> str:
        args = ["run", model_name]
        if prompt.strip():
            args.append(prompt)
        return await self._run_checked("run", "Failed to run model", *args)

    async def stop_model(self, model_name: str) -> None:
        await self._run_checked("stop", "Failed to stop model", "stop", model_name)

    async def remove_model(self, model_name: str) -> None:
        await self._run_checked("rm", "Failed to remove model", "rm", model_name)

    async def pull_model(self, model_name: str) -> str:
        return await self._run_checked("pull", "Failed to pull model", "pull", model_name)

    async def execute_command(self, command: str) -> str:
        """Run ``ollama`` with the whitespace-separated words of ``command``."""
        parts = command.split()
        if not parts:
            raise OllamaError("Empty command")
        return await self._run_checked("command", "Command failed", *parts)

    def _last_prompt_from_file(self, path: Path) -> str | None:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        return extract_last_prompt_from_lines(_text_lines(content))

    def list_chat_logs(self) -> list[ChatLogEntry]:
        """Saved chat logs, newest first."""
        if not self.log_dir.exists():
            return []
        try:
            paths = sorted(self.log_dir.iterdir())
        except OSError as exc:
            raise OllamaError("Failed to read chat log directory") from exc

        entries = []
        for path in paths:
            if not path.is_file() or path.suffix != ".log":
                continue
            parsed = parse_log_filename(path.stem)
            if parsed is not None:
                ended_at_dt, model = parsed
            else:
                try:
                    mtime = path.stat().st_mtime
                except OSError:
                    mtime = 0.0
                ended_at_dt = datetime.fromtimestamp(mtime).astimezone()
                model = "Unknown"

            metadata = self.read_chat_metadata(path)
            last_prompt = metadata.last_user_prompt if metadata is not None else ""
            if not last_prompt.strip():
                last_prompt = self._last_prompt_from_file(path) or ""

            entries.append(
                ChatLogEntry(
                    model=model,
                    ended_at=max(int(ended_at_dt.timestamp()), 0),
                    ended_at_display=format_log_timestamp(ended_at_dt),
                    path=str(path),
                    last_prompt=last_prompt,
                )
            )

        entries.sort(key=lambda entry: entry.ended_at, reverse=True)
        return entries

    def save_chat_log(
        self, model_name: str, content: str, prefix: str = ""
    ) -> ChatLogEntry:
        """Write a chat transcript to a new log file named after the model and time."""
        now = datetime.now().astimezone()
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OllamaError("Failed to create chat log directory") from exc
        path = self.log_dir / build_log_filename(now, model_name, prefix.strip() or None)
        try:
            path.write_bytes(content.encode("utf-8"))
        except OSError as exc:
            raise OllamaError("Failed to write chat log") from exc
        return ChatLogEntry(
            model=model_name,
            ended_at=int(now.timestamp()),
            ended_at_display=format_log_timestamp(now),
            path=str(path),
            last_prompt="",
        )

    def write_chat_metadata(self, log_path: str | Path, metadata: ChatLogMetadata) -> None:
        """Store metadata in a TOML file beside the chat log."""
        data = {key: value for key, value in asdict(metadata).items() if value is not None}
        try:
            content = tomli_w.dumps(data)
        except (TypeError, ValueError) as exc:
            raise OllamaError("Failed to serialize chat metadata") from exc
        try:
            chat_log_meta_path(log_path).write_text(content, encoding="utf-8")
        except OSError as exc:
            raise OllamaError("Failed to write chat metadata") from exc

    def read_chat_metadata(self, log_path: str | Path) -> ChatLogMetadata | None:
        """Metadata stored beside a chat log, or None if absent or unreadable."""
        try:
            content = chat_log_meta_path(log_path).read_text(encoding="utf-8")
            data = tomllib.loads(content)
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError):
            return None
        known = {f.name for f in fields(ChatLogMetadata)}
        try:
            metadata = ChatLogMetadata(**{k: v for k, v in data.items() if k in known})
        except TypeError:
            return None
        int_fields = ("ended_at", "message_count", "total_turns")
        str_fields = ("model", "ended_at_display", "last_user_prompt")
        if not all(isinstance(getattr(metadata, name), int) for name in int_fields):
            return None
        if not all(isinstance(getattr(metadata, name), str) for name in str_fields):
            return None
        return metadata

    def add_log_entry(self, action: str, details: str, success: bool) -> ActivityLogEntry:
        return ActivityLogEntry(
            timestamp=int(time.time()),
            action=action,
            details=details,
            success=success,
        )