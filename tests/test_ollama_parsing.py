from datetime import datetime
from pathlib import Path

import pytest

from tuiplus.ollama_parsing import (
    build_log_filename,
    chat_log_meta_path,
    decode_filename_component,
    encode_filename_component,
    extract_last_prompt_from_lines,
    find_column,
    format_log_timestamp,
    format_mb_as_gb,
    format_param_display,
    is_cloud_model,
    normalize_size,
    parse_log_filename,
    parse_model_params_from_name,
    parse_size_to_bytes,
    split_columns,
)


def test_split_columns_header_and_row():
    header = "NAME            ID              SIZE     PROCESSOR    CONTEXT    UNTIL"
    assert split_columns(header) == [
        "NAME", "ID", "SIZE", "PROCESSOR", "CONTEXT", "UNTIL",
    ]
    row = (
        "llama3:latest    a80c4f17acd5    2.0 GB   100% GPU     4096       "
        "44 minutes from now"
    )
    assert split_columns(row) == [
        "llama3:latest", "a80c4f17acd5", "2.0 GB", "100% GPU", "4096",
        "44 minutes from now",
    ]


def test_split_columns_single_whitespace_becomes_space():
    assert split_columns("  a\tb  c   ") == ["a b", "c"]
    assert split_columns("   ") == []


def test_find_column_ignores_case():
    headers = ["NAME", "ID", "Size"]
    assert find_column(headers, "size") == 2
    assert find_column(headers, "name") == 0
    assert find_column(headers, "UNTIL") is None


def test_parse_model_params_variants():
    assert parse_model_params_from_name("llama3:70b") == (70.0, "B", "70B")
    assert parse_model_params_from_name("qwen2:1.5b") == (1.5, "B", "1.5B")
    assert parse_model_params_from_name("model-32m") == (32.0, "M", "32M")
    assert parse_model_params_from_name("no-params") == (None, None, "-")


def test_parse_model_params_skips_leading_unit():
    assert parse_model_params_from_name("b") == (None, None, "-")
    assert parse_model_params_from_name("mistral:7b") == (7.0, "B", "7B")


@pytest.mark.parametrize(
    "value, unit, expected",
    [(70.0, "B", "70B"), (1.5, "B", "1.5B"), (1.25, "M", "1.25M"), (1.1, "T", "1.1T")],
)
def test_format_param_display(value, unit, expected):
    assert format_param_display(value, unit) == expected


def test_extract_last_prompt_final_unanswered():
    lines = [
        "Запрос: First question",
        "Ответ: First answer",
        "Запрос: Second question",
        "  with extra context",
        "Ответ: Second answer",
        "Запрос: Final question",
    ]
    assert extract_last_prompt_from_lines(lines) == "Final question"


def test_extract_last_prompt_multiline():
    lines = ["Запрос: Multiline", "  prompt line two", "Ответ: Done"]
    assert extract_last_prompt_from_lines(lines) == "Multiline\nprompt line two"


def test_extract_last_prompt_english_and_bom():
    lines = ["\ufeffRequest: hello", "Response: hi"]
    assert extract_last_prompt_from_lines(lines) == "hello"
    assert extract_last_prompt_from_lines(["no prompt here"]) is None


def test_encode_filename_component():
    assert encode_filename_component("llama3:8b") == "llama3%3A8b"
    assert encode_filename_component("a b/c") == "a%20b%2Fc"
    assert encode_filename_component("é") == "%C3%A9"


@pytest.mark.parametrize("text", ["llama3:8b", "модель/тест", "plain-name_1.0"])
def test_filename_component_round_trip(text):
    assert decode_filename_component(encode_filename_component(text)) == text


def test_decode_keeps_malformed_escapes():
    assert decode_filename_component("%zz") == "%zz"
    assert decode_filename_component("a%4") == "a%4"
    assert decode_filename_component("%2B") == "+"


def test_build_log_filename():
    ts = datetime(2024, 1, 2, 3, 4, 5)
    assert build_log_filename(ts, "llama3:8b") == "2024-01-02_03-04-05__llama3%3A8b.log"
    assert build_log_filename(ts, "m", " A ") == "A_2024-01-02_03-04-05__m.log"
    assert build_log_filename(ts, "m", "   ") == "2024-01-02_03-04-05__m.log"


def test_parse_log_filename_round_trip():
    ts = datetime(2024, 1, 2, 3, 4, 5)
    for prefix in (None, "A"):
        stem = build_log_filename(ts, "llama3:8b", prefix)[: -len(".log")]
        parsed = parse_log_filename(stem)
        assert parsed is not None
        dt, model = parsed
        assert model == "llama3:8b"
        assert dt.replace(tzinfo=None) == ts


def test_parse_log_filename_invalid():
    assert parse_log_filename("no-separator") is None
    assert parse_log_filename("not-a-date__model") is None


def test_format_log_timestamp():
    assert format_log_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04"


def test_is_cloud_model():
    assert is_cloud_model("gpt-oss:120b-CLOUD") is True
    assert is_cloud_model("llama3:8b") is False


def test_format_mb_as_gb():
    assert format_mb_as_gb(512) == "512 MB"
    assert format_mb_as_gb(1024) == "1.00 GB"
    assert format_mb_as_gb(1536) == "1.50 GB"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("512 B", 512),
        ("1 KB", 1024),
        ("2 MB", 2097152),
        ("1 gb", 1073741824),
        ("1 tb", 1099511627776),
        ("3 XB", 0),
        ("abc", 0),
        ("x GB", 0),
    ],
)
def test_parse_size_to_bytes(text, expected):
    assert parse_size_to_bytes(text) == expected


def test_normalize_size():
    assert normalize_size("  -  ") == ("-", 0)
    assert normalize_size("") == ("-", 0)
    assert normalize_size(" 274 MB ") == ("274 MB", 274 * 1024 * 1024)
    display, size = normalize_size("1.9 GB")
    assert display == "1.9 GB"
    assert size > 0


def test_chat_log_meta_path():
    assert chat_log_meta_path("logs/ollama/x.log") == Path("logs/ollama/x.toml")
    assert chat_log_meta_path(Path("x")) == Path("x.toml")