import time
from pathlib import Path

import pytest

from tuiplus.ollama import (
    ChatLogMetadata,
    OllamaClient,
    OllamaError,
)

MISSING_EXE = "/nonexistent/dir/ollama-binary-missing"


@pytest.fixture
def client(tmp_path):
    return OllamaClient("ollama", tmp_path / "logs")


def test_parse_model_list_columns(client):
    output = (
        "NAME                          ID              SIZE      MODIFIED\n"
        "granite4:micro-h               076afb3855dc    1.9 GB    4 weeks ago\n"
        "nomic-embed-text:latest        0a109f422b47    274 MB    4 weeks ago\n"
        "gemini-3-pro-preview:latest    91a1db042ba1    -         5 weeks ago\n"
    )
    models = client.parse_model_list(output)
    assert len(models) == 3
    assert models[0].name == "granite4:micro-h"
    assert models[0].size_display == "1.9 GB"
    assert models[0].size_bytes > 0
    assert models[0].modified == "4 weeks ago"
    assert models[2].size_display == "-"
    assert models[2].size_bytes == 0
    assert models[2].modified == "5 weeks ago"


def test_parse_model_list_empty(client):
    assert client.parse_model_list("\n   \n") == []


def test_parse_running_models_columns(client):
    output = (
        "NAME            ID              SIZE     PROCESSOR    CONTEXT    UNTIL\n"
        "llama3:latest    a80c4f17acd5    2.0 GB   100% GPU     4096       44 minutes from now\n"
        "qwen:latest      123456789abc    1.2 GB   CPU/GPU      2048       -\n"
    )
    running = client.parse_running_models(output)
    assert len(running) == 2
    assert running[0].name == "llama3:latest"
    assert running[0].size_display == "2.0 GB"
    assert running[0].processor == "100% GPU"
    assert running[0].until == "44 minutes from now"
    assert running[1].until is None
    assert running[0].gpu_memory_display == "-"


def test_parse_running_models_param_fields(client):
    output = "NAME    SIZE\nqwen2:1.5b    1 GB\n"
    running = client.parse_running_models(output)
    assert running[0].params_value == 1.5
    assert running[0].params_unit == "B"
    assert running[0].processor == "Unknown"


def test_list_chat_logs_missing_dir(client):
    assert client.list_chat_logs() == []


def test_list_chat_logs_sorted_and_decoded(client):
    client.log_dir.mkdir(parents=True)
    (client.log_dir / "2024-01-01_09-00-00__qwen.log").write_text(
        "Request: older\nResponse: ok\n", encoding="utf-8"
    )
    (client.log_dir / "2024-01-02_10-00-00__llama3%3Alatest.log").write_text(
        "Request: hi there\nResponse: hello\n", encoding="utf-8"
    )
    (client.log_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    entries = client.list_chat_logs()
    assert [e.model for e in entries] == ["llama3:latest", "qwen"]
    assert entries[0].ended_at_display == "2024-01-02 10:00"
    assert entries[0].last_prompt == "hi there"
    assert entries[1].last_prompt == "older"


def test_list_chat_logs_unknown_name(client):
    client.log_dir.mkdir(parents=True)
    (client.log_dir / "random.log").write_text("", encoding="utf-8")
    entries = client.list_chat_logs()
    assert len(entries) == 1
    assert entries[0].model == "Unknown"
    assert entries[0].last_prompt == ""


def test_save_chat_log_with_prefix_round_trip(client):
    entry = client.save_chat_log("llama3:latest", "Request: q\nResponse: a\n", prefix="a")
    path = Path(entry.path)
    assert path.name.startswith("a_")
    assert path.read_text(encoding="utf-8") == "Request: q\nResponse: a\n"
    listed = client.list_chat_logs()
    assert len(listed) == 1
    assert listed[0].model == "llama3:latest"
    assert listed[0].last_prompt == "q"


def test_save_chat_log_without_prefix(client):
    entry = client.save_chat_log("model x", "content")
    assert Path(entry.path).name.endswith("__model%20x.log")
    assert entry.model == "model x"
    assert entry.last_prompt == ""


def test_metadata_round_trip_and_prompt_override(client):
    entry = client.save_chat_log("qwen", "Request: from file\n")
    metadata = ChatLogMetadata(
        model="qwen",
        ended_at=1700000000,
        ended_at_display="2023-11-14 22:13",
        last_user_prompt="from metadata",
        message_count=4,
        total_turns=2,
    )
    client.write_chat_metadata(entry.path, metadata)
    assert Path(entry.path).with_suffix(".toml").exists()
    assert client.read_chat_metadata(entry.path) == metadata
    assert client.list_chat_logs()[0].last_prompt == "from metadata"


def test_metadata_with_pause_fields(client):
    entry = client.save_chat_log("qwen", "")
    metadata = ChatLogMetadata(
        model="qwen",
        ended_at=5,
        ended_at_display="x",
        last_user_prompt="",
        message_count=0,
        total_turns=0,
        paused_at=3,
        paused_at_display="y",
    )
    client.write_chat_metadata(entry.path, metadata)
    assert client.read_chat_metadata(entry.path).paused_at == 3


def test_read_chat_metadata_invalid(client, tmp_path):
    log = tmp_path / "a.log"
    (tmp_path / "a.toml").write_text("not = [valid", encoding="utf-8")
    assert client.read_chat_metadata(log) is None
    assert client.read_chat_metadata(tmp_path / "missing.log") is None


def test_add_log_entry():
    client = OllamaClient()
    before = int(time.time())
    entry = client.add_log_entry("stop", "llama3", True)
    assert entry.action == "stop"
    assert entry.details == "llama3"
    assert entry.success is True
    assert before <= entry.timestamp <= int(time.time())


def test_default_path():
    assert OllamaClient().ollama_path == "ollama"


@pytest.mark.asyncio
async def test_execute_command_empty():
    with pytest.raises(OllamaError, match="Empty command"):
        await OllamaClient(MISSING_EXE).execute_command("   ")


@pytest.mark.asyncio
async def test_check_availability_missing_executable():
    assert await OllamaClient(MISSING_EXE).check_availability() is False


@pytest.mark.asyncio
async def test_collect_data_unavailable(tmp_path):
    data = await OllamaClient(MISSING_EXE, tmp_path).collect_data()
    assert data.available is False
    assert data.models == []
    assert data.chat_logs == []


@pytest.mark.asyncio
async def test_list_models_missing_executable():
    with pytest.raises(OllamaError, match="Failed to execute ollama list"):
        await OllamaClient(MISSING_EXE).list_models()


@pytest.mark.asyncio
async def test_stop_model_missing_executable():
    with pytest.raises(OllamaError, match="Failed to execute ollama stop"):
        await OllamaClient(MISSING_EXE).stop_model("llama3")