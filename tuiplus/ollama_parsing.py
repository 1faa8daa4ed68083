"""Parsing helpers for Ollama CLI output, model names and chat log files."""

from __future__ import annotations

import math
import re
from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence

_COLUMN_GAP = re.compile(r"\s{2,}")
_SINGLE_SPACE = re.compile(r"\s")
_HEX_BYTE = re.compile(rb"\+?[0-9A-Fa-f]{1,2}")
_SAFE_FILENAME_BYTES = frozenset(
    b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_."
)
_ASCII_LOWER = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz"
)
_ASCII_DIGITS = frozenset("0123456789")
_PARAM_UNITS = frozenset("MBT")
_LOG_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
_U64_MAX = 2**64 - 1

_USER_PREFIXES = ("Запрос:", "Р—Р°РїСЂРѕСЃ:", "Request:")
_ASSISTANT_PREFIXES = ("Ответ:", "РћС‚РІРµС‚:", "Response:")

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}


def _ascii_lower(text: str) -> str:
    return text.translate(_ASCII_LOWER)


def split_columns(line: str) -> list[str]:
    """Split a table row into columns separated by two or more whitespace characters."""
    columns = []
    for segment in _COLUMN_GAP.split(line):
        cell = _SINGLE_SPACE.sub(" ", segment).strip()
        if cell:
            columns.append(cell)
    return columns


def find_column(headers: Sequence[str], name: str) -> int | None:
    """Index of the header equal to ``name`` ignoring ASCII case, or None."""
    wanted = _ascii_lower(name)
    return next(
        (i for i, header in enumerate(headers) if _ascii_lower(header) == wanted),
        None,
    )


def format_param_display(value: float, unit: str) -> str:
    """Render a parameter count such as ``70B`` or ``1.5B``."""
    if abs(math.modf(value)[0]) < 2.220446049250313e-16:
        return f"{value:.0f}{unit}"
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text}{unit}"


def parse_model_params_from_name(name: str) -> tuple[float | None, str | None, str]:
    """Find a parameter count like ``7b`` or ``1.5B`` in a model name.

    Returns the value, the unit letter (M, B or T) and a display string;
    ``(None, None, "-")`` when the name holds none.
    """
    for idx, ch in enumerate(name):
        unit = ch.upper() if ch.isascii() else ch
        if unit not in _PARAM_UNITS or idx == 0:
            continue
        start = idx
        while start > 0 and (name[start - 1] in _ASCII_DIGITS or name[start - 1] == "."):
            start -= 1
        if start == idx:
            continue
        try:
            value = float(name[start:idx])
        except ValueError:
            continue
        return value, unit, format_param_display(value, unit)
    return None, None, "-"


def _match_prefix(line: str, prefixes: Iterable[str]) -> str | None:
    return next((prefix for prefix in prefixes if line.startswith(prefix)), None)


def extract_last_prompt_from_lines(lines: Iterable[str]) -> str | None:
    """The last user prompt in a chat log, or None when there is none."""
    current = ""
    in_prompt = False
    last_prompt: str | None = None

    for raw_line in lines:
        line = raw_line.rstrip().lstrip("\ufeff")
        prefix = _match_prefix(line, _USER_PREFIXES)
        if prefix is not None:
            if in_prompt and current:
                last_prompt = current.rstrip()
            current = line[len(prefix):].lstrip()
            in_prompt = True
            continue
        if _match_prefix(line, _ASSISTANT_PREFIXES) is not None:
            if in_prompt and current:
                last_prompt = current.rstrip()
            current = ""
            in_prompt = False
            continue
        if in_prompt:
            continuation = line[2:] if line.startswith("  ") else line
            if current:
                current += "\n"
            current += continuation

    if in_prompt and current:
        last_prompt = current.rstrip()
    return last_prompt


def encode_filename_component(text: str) -> str:
    """Percent-encode every UTF-8 byte that is not safe in a file name."""
    return "".join(
        chr(byte) if byte in _SAFE_FILENAME_BYTES else f"%{byte:02X}"
        for byte in text.encode("utf-8")
    )


def decode_filename_component(text: str) -> str:
    """Undo :func:`encode_filename_component`; malformed escapes are kept as is."""
    data = text.encode("utf-8")
    out = bytearray()
    i = 0
    while i < len(data):
        if data[i] == ord("%") and i + 2 < len(data):
            pair = data[i + 1:i + 3]
            if _HEX_BYTE.fullmatch(pair):
                out.append(int(pair, 16))
                i += 3
                continue
        out.append(data[i])
        i += 1
    return out.decode("utf-8", errors="replace")


def build_log_filename(
    timestamp: datetime, model_name: str, prefix: str | None = None
) -> str:
    """File name for a chat log, ``[prefix_]<timestamp>__<model>.log``."""
    stamp = timestamp.strftime(_LOG_TIMESTAMP_FORMAT)
    encoded_model = encode_filename_component(model_name)
    prefix = prefix.strip() if prefix is not None else ""
    if prefix:
        return f"{prefix}_{stamp}__{encoded_model}.log"
    return f"{stamp}__{encoded_model}.log"


def parse_log_filename(stem: str) -> tuple[datetime, str] | None:
    """Read the local time and model name back from a chat log file stem."""
    timestamp_raw, sep, model = stem.partition("__")
    if not sep:
        return None
    timestamp = timestamp_raw
    if len(timestamp_raw.encode("utf-8")) >= 21:
        first = timestamp_raw[0]
        if timestamp_raw[1] == "_" and first.isascii() and first.isalpha():
            timestamp = timestamp_raw[2:]
    try:
        naive = datetime.strptime(timestamp, _LOG_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return naive.astimezone(), decode_filename_component(model)


def format_log_timestamp(timestamp: datetime) -> str:
    return timestamp.strftime("%Y-%m-%d %H:%M")


def is_cloud_model(name: str) -> bool:
    """Whether the model runs remotely rather than on a local GPU."""
    return "cloud" in _ascii_lower(name)


def format_mb_as_gb(total_mb: int) -> str:
    if total_mb < 1024:
        return f"{total_mb} MB"
    return f"{total_mb / 1024:.2f} GB"


def _to_u64(value: float) -> int:
    if math.isnan(value) or value <= 0:
        return 0
    if value >= _U64_MAX:
        return _U64_MAX
    return int(value)


def parse_size_to_bytes(size: str) -> int:
    """Bytes in a size such as ``1.9 GB``; 0 when it cannot be read."""
    parts = size.split()
    if len(parts) < 2:
        return 0
    try:
        value = float(parts[0])
    except ValueError:
        value = 0.0
    factor = _SIZE_UNITS.get(parts[1].upper())
    if factor is None:
        return 0
    return _to_u64(value * factor)


def normalize_size(raw: str) -> tuple[str, int]:
    """Display text and byte count for a size column; ``-`` when absent."""
    trimmed = raw.strip()
    if not trimmed or trimmed == "-":
        return "-", 0
    return trimmed, parse_size_to_bytes(trimmed)


def chat_log_meta_path(log_path: str | Path) -> Path:
    """Path of the metadata file that sits beside a chat log."""
    return Path(log_path).with_suffix(".toml")