"""Tab definitions and the tab selection model."""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class TabType(Enum):
    """A tab of the monitor; the value is its display label."""

    CPU = "CPU"
    GPU = "GPU"
    RAM = "RAM"
    DISK = "Disk"
    NETWORK = "Network"
    OLLAMA = "Ollama"
    PROCESSES = "Processes"
    SERVICES = "Services"
    DISK_ANALYZER = "Disk Analyzer"
    SETTINGS = "Settings"

    @property
    def label(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> "TabType | None":
        """Look up a tab by its configuration key, ignoring case."""
        return _BY_KEY.get(name.lower())

    @classmethod
    def all(cls) -> list["TabType"]:
        """Every tab, in the default display order."""
        return [
            cls.CPU,
            cls.GPU,
            cls.RAM,
            cls.DISK,
            cls.DISK_ANALYZER,
            cls.NETWORK,
            cls.OLLAMA,
            cls.PROCESSES,
            cls.SERVICES,
            cls.SETTINGS,
        ]


_BY_KEY: dict[str, TabType] = {
    "cpu": TabType.CPU,
    "gpu": TabType.GPU,
    "ram": TabType.RAM,
    "disk": TabType.DISK,
    "network": TabType.NETWORK,
    "ollama": TabType.OLLAMA,
    "processes": TabType.PROCESSES,
    "services": TabType.SERVICES,
    "disk_analyzer": TabType.DISK_ANALYZER,
    "settings": TabType.SETTINGS,
}


class TabManager:
    """Holds the enabled tabs and which one is selected."""

    def __init__(self, enabled_tabs: Iterable[str], default_tab: str) -> None:
        self.tabs: list[TabType] = [
            tab for tab in map(TabType.from_name, enabled_tabs) if tab is not None
        ]
        wanted = default_tab.lower()
        self.current_index: int = next(
            (i for i, tab in enumerate(self.tabs) if tab.label.lower() == wanted), 0
        )

    def _require_tabs(self) -> None:
        if not self.tabs:
            raise IndexError("no tabs are enabled")

    def current(self) -> TabType:
        self._require_tabs()
        return self.tabs[self.current_index]

    def next(self) -> None:
        self._require_tabs()
        self.current_index = (self.current_index + 1) % len(self.tabs)

    def previous(self) -> None:
        self._require_tabs()
        if self.current_index == 0:
            self.current_index = len(self.tabs) - 1
        else:
            self.current_index -= 1

    def select(self, tab: TabType) -> None:
        """Select ``tab`` if it is enabled; otherwise leave the selection alone."""
        try:
            self.current_index = self.tabs.index(tab)
        except ValueError:
            pass