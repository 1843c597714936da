"""Unit tests for context_helpers: create_llm_context, get_content_for_indices."""

from utils.context_helpers import (
    DEFAULT_MAX_CHARS_PER_FILE,
    TRUNCATION_MARKER,
    create_llm_context,
    get_content_for_indices,
    max_chars_per_file,
    truncate_content,
)


def test_create_llm_context_formats_index_and_path():
    """create_llm_context returns content blocks headed by index and path, plus the listing."""
    files = [
        ("src/main.py", "print(1)"),
        ("src/utils.py", "def foo(): pass"),
    ]
    context, file_info = create_llm_context(files)
    assert "--- File Index 0: src/main.py ---\nprint(1)" in context
    assert "--- File Index 1: src/utils.py ---\ndef foo(): pass" in context
    assert file_info == [(0, "src/main.py"), (1, "src/utils.py")]


def test_create_llm_context_empty_list():
    assert create_llm_context([]) == ("", [])


def test_create_llm_context_truncates_each_file():
    context, _ = create_llm_context([("big.py", "x" * 50), ("small.py", "y")], max_chars=10)
    assert "x" * 10 + TRUNCATION_MARKER in context
    assert "x" * 11 not in context
    assert "\ny\n" in context


def test_get_content_for_indices_returns_content_for_each_index():
    files = [
        ("a.py", "code_a"),
        ("b.py", "code_b"),
        ("c.py", "code_c"),
    ]
    result = get_content_for_indices(files, [0, 2])
    assert result == {"0 # a.py": "code_a", "2 # c.py": "code_c"}


def test_get_content_for_indices_skips_invalid_indices():
    """get_content_for_indices skips indices out of range."""
    files = [("x.py", "x")]
    assert get_content_for_indices(files, [0, 5, -1]) == {"0 # x.py": "x"}


def test_get_content_for_indices_empty():
    assert get_content_for_indices([("a.py", "a")], []) == {}
    assert get_content_for_indices([], [0, 1]) == {}


def test_truncate_content_limits(monkeypatch):
    assert truncate_content("abc", limit=0) == "abc"
    assert truncate_content("abcdef", limit=3) == "abc" + TRUNCATION_MARKER
    monkeypatch.setenv("LLM_MAX_CHARS_PER_FILE", "4")
    assert max_chars_per_file() == 4
    assert truncate_content("abcdef") == "abcd" + TRUNCATION_MARKER
    monkeypatch.setenv("LLM_MAX_CHARS_PER_FILE", "0")
    assert truncate_content("abcdef") == "abcdef"


def test_malformed_max_chars_per_file_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("LLM_MAX_CHARS_PER_FILE", "20k")
    with caplog.at_level("WARNING", logger="repo_scrapper"):
        assert max_chars_per_file() == DEFAULT_MAX_CHARS_PER_FILE
    assert "LLM_MAX_CHARS_PER_FILE" in caplog.text
    monkeypatch.setenv("LLM_MAX_CHARS_PER_FILE", "")
    assert max_chars_per_file() == DEFAULT_MAX_CHARS_PER_FILE
