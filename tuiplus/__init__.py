"""System monitoring helpers: tabs, Linux /proc readers, PowerShell execution and Ollama management."""

__version__ = "1.0.0"

__all__ = ["tabs", "linux_sys", "powershell", "ollama_parsing", "ollama"]