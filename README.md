# tuiplus

`tuiplus` is a library for collecting data about a machine and the local
models it runs. It has four parts:

- **`tuiplus.tabs`**: `TabType` and `TabManager`. These hold an ordered set of
  dashboard tabs with wrap-around navigation.
- **`tuiplus.linux_sys`**: `LinuxSysMonitor` reads CPU, memory, disk, network
  and process figures from `/proc` and `df`. Parsers such as `parse_meminfo`
  and `parse_net_dev` also work on text you pass in.
- **`tuiplus.powershell`**: `PowerShellExecutor` runs PowerShell scripts. It
  applies a timeout, caps the output size, keeps a cache and can run several
  commands as one batch.
- **`tuiplus.ollama`** and **`tuiplus.ollama_parsing`**: `OllamaClient` lists
  installed and running models, starts, stops and removes models, and stores
  chat logs with their metadata.

## Installation

```
pip install tuiplus
```

Python 3.11 or newer is required.

## Examples

### Tabs

```python
from tuiplus.tabs import TabManager, TabType

tabs = TabManager(["cpu", "ram", "ollama"], "RAM")
tabs.current()          # TabType.RAM
tabs.next()
tabs.select(TabType.CPU)
```

### Linux system data

```python
from tuiplus.linux_sys import LinuxSysMonitor

monitor = LinuxSysMonitor()
print(monitor.memory_info())
for iface in monitor.network_stats():
    print(iface.name, iface.rx_bytes, iface.tx_bytes)
```

### PowerShell

`execute` and `execute_batch` are coroutines, so call them with `await`
inside async code:

```python
import asyncio
from tuiplus.powershell import PowerShellExecutor

async def main():
    ps = PowerShellExecutor("powershell", 10, 5, True)
    version, host = await ps.execute_batch(
        ["$PSVersionTable.PSVersion.ToString()", "hostname"]
    )
    print(version, host)

asyncio.run(main())
```

### Ollama

```python
import asyncio
from tuiplus.ollama import OllamaClient

async def main():
    client = OllamaClient()
    data = await client.collect_data()
    for model in data.models:
        print(model.name, model.size_display, model.params_display)

asyncio.run(main())
```

Chat logs are written to `logs/ollama` by default. Pass `log_dir` to
`OllamaClient` to use another directory.

## Running the tests

```
pip install "tuiplus[test]"
pytest
```