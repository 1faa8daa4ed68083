"""System statistics read from the Linux /proc filesystem and ``df``."""

from __future__ import annotations

import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

_UINT = re.compile(r"\+?[0-9]+")
_U32_MAX = 2**32 - 1
_PAGE_SIZE = 4096
_SAMPLE_INTERVAL = 0.1
_SKIPPED_FS_TYPES = {"tmpfs", "devtmpfs"}


def _parse_uint(text: str) -> int | None:
    return int(text) if _UINT.fullmatch(text) else None


def _uint_at(parts: list[str], index: int, default: int = 0) -> int:
    if index < len(parts):
        value = _parse_uint(parts[index])
        if value is not None:
            return value
    return default


@dataclass(frozen=True)
class CpuStat:
    user: int = 0
    nice: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0
    irq: int = 0
    softirq: int = 0

    def total(self) -> int:
        return (
            self.user + self.nice + self.system + self.idle
            + self.iowait + self.irq + self.softirq
        )


@dataclass
class CpuInfo:
    name: str
    core_count: int
    frequency_mhz: float


@dataclass
class MemoryInfo:
    total: int
    used: int
    available: int
    free: int
    buffers: int
    cached: int
    swap_total: int
    swap_used: int


@dataclass
class DiskInfo:
    name: str
    mount_point: str
    total: int
    used: int
    available: int
    fs_type: str


@dataclass
class NetworkInterface:
    name: str
    rx_bytes: int
    rx_packets: int
    tx_bytes: int
    tx_packets: int


@dataclass
class ProcessInfo:
    pid: int
    name: str
    cmdline: str | None
    threads: int
    memory: int


def parse_proc_stat(text: str) -> CpuStat:
    """Parse the aggregate CPU line, the first line of /proc/stat."""
    lines = text.splitlines()
    if not lines:
        raise ValueError("Empty /proc/stat")
    values = [
        v for v in (_parse_uint(tok) for tok in lines[0].split()[1:]) if v is not None
    ]
    values += [0] * (7 - len(values))
    return CpuStat(*values[:7])


def parse_cpuinfo(text: str) -> CpuInfo:
    name = "Unknown CPU"
    core_count = 0
    mhz = 0.0
    for line in text.splitlines():
        if line.startswith("model name"):
            pieces = line.split(":")
            if len(pieces) > 1:
                name = pieces[1].strip()
        elif line.startswith("processor"):
            core_count += 1
        elif line.startswith("cpu MHz"):
            pieces = line.split(":")
            if len(pieces) > 1:
                try:
                    mhz = float(pieces[1].strip())
                except ValueError:
                    pass
    return CpuInfo(name=name, core_count=core_count, frequency_mhz=mhz)


def parse_meminfo(text: str) -> MemoryInfo:
    keys = {
        "MemTotal:": "total",
        "MemAvailable:": "available",
        "MemFree:": "free",
        "Buffers:": "buffers",
        "Cached:": "cached",
        "SwapTotal:": "swap_total",
        "SwapFree:": "swap_free",
    }
    fields = dict.fromkeys(keys.values(), 0)
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        field = keys.get(parts[0])
        if field is not None:
            fields[field] = (_parse_uint(parts[1]) or 0) * 1024
    return MemoryInfo(
        total=fields["total"],
        used=fields["total"] - fields["available"],
        available=fields["available"],
        free=fields["free"],
        buffers=fields["buffers"],
        cached=fields["cached"],
        swap_total=fields["swap_total"],
        swap_used=fields["swap_total"] - fields["swap_free"],
    )


def parse_df_output(text: str) -> list[DiskInfo]:
    """Parse the output of ``df -B1 -T``, leaving out virtual filesystems."""
    disks = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 7:
            continue
        fs_type = parts[1]
        mount_point = parts[6]
        if (
            fs_type in _SKIPPED_FS_TYPES
            or mount_point.startswith("/sys")
            or mount_point.startswith("/proc")
        ):
            continue
        disks.append(
            DiskInfo(
                name=parts[0],
                mount_point=mount_point,
                total=_uint_at(parts, 2),
                used=_uint_at(parts, 3),
                available=_uint_at(parts, 4),
                fs_type=fs_type,
            )
        )
    return disks


def parse_net_dev(text: str) -> list[NetworkInterface]:
    """Parse /proc/net/dev, leaving out the loopback interface."""
    interfaces = []
    for line in text.splitlines()[2:]:
        parts = line.split()
        if not parts:
            continue
        name = parts[0].rstrip(":")
        if name == "lo":
            continue
        interfaces.append(
            NetworkInterface(
                name=name,
                rx_bytes=_uint_at(parts, 1),
                rx_packets=_uint_at(parts, 2),
                tx_bytes=_uint_at(parts, 9),
                tx_packets=_uint_at(parts, 10),
            )
        )
    return interfaces


class LinuxSysMonitor:
    """Reads CPU, memory, disk, network and process figures."""

    def __init__(self, proc_root: str | Path = "/proc") -> None:
        self.proc_root = Path(proc_root)

    def _read(self, *parts: str) -> str:
        return self.proc_root.joinpath(*parts).read_text(encoding="utf-8")

    def _cpu_stat(self) -> CpuStat:
        return parse_proc_stat(self._read("stat"))

    def cpu_usage(self) -> float:
        """Overall CPU usage in percent, sampled over a short interval."""
        first = self._cpu_stat()
        time.sleep(_SAMPLE_INTERVAL)
        second = self._cpu_stat()
        total_diff = second.total() - first.total()
        idle_diff = second.idle - first.idle
        if total_diff == 0:
            return 0.0
        return 100.0 * (1.0 - idle_diff / total_diff)

    def cpu_info(self) -> CpuInfo:
        return parse_cpuinfo(self._read("cpuinfo"))

    def core_usage(self) -> list[float]:
        """Per-core usage; every core reports the overall figure."""
        usage = self.cpu_usage()
        return [usage] * self.cpu_info().core_count

    def memory_info(self) -> MemoryInfo:
        return parse_meminfo(self._read("meminfo"))

    def disk_info(self) -> list[DiskInfo]:
        result = subprocess.run(["df", "-B1", "-T"], capture_output=True, check=False)
        return parse_df_output(result.stdout.decode("utf-8", errors="replace"))

    def network_stats(self) -> list[NetworkInterface]:
        return parse_net_dev(self._read("net", "dev"))

    def processes(self) -> list[ProcessInfo]:
        """Every process whose details could be read."""
        found = []
        try:
            entries = list(self.proc_root.iterdir())
        except OSError:
            return found
        for entry in entries:
            pid = _parse_uint(entry.name)
            if pid is None or pid > _U32_MAX:
                continue
            try:
                found.append(self.process_info(pid))
            except (OSError, UnicodeDecodeError):
                continue
        return found

    def process_info(self, pid: int) -> ProcessInfo:
        stat = self._read(str(pid), "stat")
        parts = stat.split()

        start = stat.find("(")
        end = stat.find(")")
        name = stat[start + 1:end] if start != -1 and end != -1 else "unknown"

        try:
            cmdline: str | None = (
                self._read(str(pid), "cmdline").replace("\0", " ").strip()
            )
        except (OSError, UnicodeDecodeError):
            cmdline = None

        threads = _uint_at(parts, 19, default=1)

        try:
            statm = self._read(str(pid), "statm")
        except (OSError, UnicodeDecodeError):
            memory = 0
        else:
            pages = [v for v in map(_parse_uint, statm.split()) if v is not None]
            memory = (pages[1] if len(pages) > 1 else 0) * _PAGE_SIZE

        return ProcessInfo(
            pid=pid, name=name, cmdline=cmdline, threads=threads, memory=memory
        )