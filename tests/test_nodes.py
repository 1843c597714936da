"""Unit tests for nodes (prep/exec/post contract, parsing, chapter ordering and writing)."""

from unittest.mock import MagicMock, patch

import pytest

from nodes import (
    ATTRIBUTION,
    AnalyzeRelationships,
    CombineTutorial,
    FetchRepo,
    IdentifyAbstractions,
    OrderChapters,
    WriteChapters,
    _extract_yaml_block,
    _parse_index_from_ref,
    chapter_filename,
    derive_project_name,
    generation_settings,
)
from shared_schema import default_shared_store
from utils.call_llm import LLMResult
from utils.crawl_github_files import CrawlerResult, CrawlStats
from utils.errors import ErrorKind, LLMError, RepoError
from utils.repo_cache import (
    RegenerationMode,
    RegenerationPlan,
    create_repo_cache,
    save_repo_cache,
    store_generation_results,
)
from utils.retry import RetryPolicy
from utils.storage_adapters import MemoryStorageAdapter

REPO = "https://github.com/owner/repo"
FILES = [("src/a.py", "def a(): pass"), ("src/b.py", "def b(): pass"), ("src/c.py", "def c(): pass")]
ABSTRACTIONS = [
    {"name": "Alpha", "description": "First concept.", "files": [0]},
    {"name": "Beta", "description": "Second concept.", "files": [1]},
    {"name": "Gamma", "description": "Third concept.", "files": [2]},
]


def _noop(_delay):
    pass


def _shared(**overrides):
    shared = default_shared_store()
    shared.update(repo_url=REPO, project_name="repo", files=list(FILES))
    shared.update(overrides)
    return shared


def _llm(*texts):
    return [LLMResult(text=t, input_tokens=10, output_tokens=5) for t in texts]


def test_derive_project_name_from_repo_url():
    """Project name is the repository name."""
    assert derive_project_name("https://github.com/owner/repo", None) == "repo"
    assert derive_project_name("https://github.com/a/b.git", None) == "b"
    assert derive_project_name("owner/tool#main", None) == "tool"


def test_derive_project_name_existing_takes_precedence():
    assert derive_project_name("https://github.com/o/r", "Custom") == "Custom"
    assert derive_project_name("https://github.com/o/r", "  ") == "r"


def test_chapter_filename():
    assert chapter_filename(1, "Query Engine") == "01_query_engine.md"
    assert chapter_filename(12, "I/O-Layer") == "12_i_o_layer.md"


def test_parse_index_from_ref():
    assert _parse_index_from_ref(3) == 3
    assert _parse_index_from_ref("2 # src/main.py") == 2
    assert _parse_index_from_ref(" 0 ") == 0
    with pytest.raises(ValueError):
        _parse_index_from_ref("abc")
    with pytest.raises(TypeError):
        _parse_index_from_ref(True)


def test_extract_yaml_block():
    assert _extract_yaml_block("text\n```yaml\n- 1\n```\nmore") == "- 1"
    assert _extract_yaml_block("- 1\n- 2") == "- 1\n- 2"


def test_fetch_repo_prep_requires_repo_url():
    with pytest.raises(RepoError) as exc_info:
        FetchRepo().prep(default_shared_store())
    assert exc_info.value.kind == ErrorKind.VALIDATION


def test_fetch_repo_prep_returns_crawler_params():
    shared = _shared(project_name=None, include_patterns=["**/*.py"], max_file_size=50_000)
    prep_res = FetchRepo().prep(shared)
    assert prep_res["repo_url"] == REPO
    assert prep_res["project_name"] == "repo"
    assert prep_res["include_patterns"] == ["**/*.py"]
    assert prep_res["max_file_size"] == 50_000
    assert prep_res["storage_adapter"] is None


def test_fetch_repo_without_cache_writes_sorted_files():
    shared = _shared(files=[])
    crawl = CrawlerResult(files={"b.py": "2", "a.py": "1"}, stats=CrawlStats(files_count=2))
    with patch("nodes.server_github_crawler", return_value=crawl) as mock_crawl:
        action = FetchRepo().run(shared)
    options = mock_crawl.call_args[0][0]
    assert options.repo_url == REPO
    assert action == "default"
    assert shared["files"] == [("a.py", "1"), ("b.py", "2")]
    assert shared["crawl_stats"]["files_count"] == 2
    assert shared["regeneration_plan"].mode == RegenerationMode.FULL
    assert shared["repo_cache"] is None


def test_fetch_repo_no_files_is_generation_error():
    shared = _shared(files=[])
    with patch("nodes.server_github_crawler", return_value=CrawlerResult()):
        with pytest.raises(RepoError) as exc_info:
            FetchRepo().run(shared)
    assert exc_info.value.kind == ErrorKind.GENERATION


def test_fetch_repo_unchanged_cache_takes_cached_branch():
    adapter = MemoryStorageAdapter()
    shared = _shared(files=[], storage_adapter=adapter)
    cache = store_generation_results(
        create_repo_cache(REPO),
        files=FILES,
        abstractions=ABSTRACTIONS[:1],
        relationships={"summary": "s", "details": []},
        chapter_order=[0],
        chapters=[{"position": 1, "title": "Alpha", "filename": "01_alpha.md", "content": "# Chapter 1: Alpha"}],
        project_name="repo",
        metadata={"generation": generation_settings(shared)},
    )
    save_repo_cache(adapter, cache)
    with patch("nodes.server_github_crawler", return_value=CrawlerResult(files=dict(FILES))):
        action = FetchRepo().run(shared)
    assert action == "cached"
    assert shared["regeneration_plan"].mode == RegenerationMode.NONE
    assert shared["file_changes"]["unchanged"] == sorted(p for p, _ in FILES)


def test_fetch_repo_language_change_regenerates_everything():
    adapter = MemoryStorageAdapter()
    english = _shared(files=[], storage_adapter=adapter)
    cache = store_generation_results(
        create_repo_cache(REPO),
        files=FILES,
        abstractions=ABSTRACTIONS[:1],
        relationships={"summary": "s", "details": []},
        chapter_order=[0],
        chapters=[{"position": 1, "title": "Alpha", "filename": "01_alpha.md", "content": "# Chapter 1: Alpha"}],
        metadata={"generation": generation_settings(english)},
    )
    save_repo_cache(adapter, cache)
    shared = _shared(files=[], storage_adapter=adapter, language="Spanish")
    with patch("nodes.server_github_crawler", return_value=CrawlerResult(files=dict(FILES))):
        action = FetchRepo().run(shared)
    assert action == "default"
    plan = shared["regeneration_plan"]
    assert plan.mode == RegenerationMode.FULL
    assert "language" in plan.reason
    assert plan.stale_chapters == [1]


def test_generation_settings_normalizes_language_and_provider(monkeypatch):
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    settings = generation_settings(_shared(language=" French ", llm={"model": "m"}, max_abstraction_num=4))
    assert settings == {"language": "french", "max_abstraction_num": 4, "provider": "gemini", "model": "m"}


def test_identify_abstractions_parses_yaml_and_drops_bad_indices():
    response = """```yaml
- name: |
    Alpha
  description: |
    First concept.
  file_indices:
    - 0 # src/a.py
    - 7 # out of range
- name: Beta
  description: Second concept.
  file_indices: [1, "2 # src/c.py"]
```"""
    shared = _shared()
    with patch("nodes.call_llm", side_effect=_llm(response)) as mock_llm:
        IdentifyAbstractions().run(shared)
    mock_llm.assert_called_once()
    assert shared["abstractions"] == [
        {"name": "Alpha", "description": "First concept.", "files": [0]},
        {"name": "Beta", "description": "Second concept.", "files": [1, 2]},
    ]
    assert shared["token_usage"]["IdentifyAbstractions"] == {"input_tokens": 10, "output_tokens": 5, "calls": 1}


def test_identify_abstractions_truncates_to_max():
    response = "\n".join(f"- name: A{i}\n  description: d\n  file_indices: [0]" for i in range(5))
    shared = _shared(max_abstraction_num=2)
    with patch("nodes.call_llm", side_effect=_llm(response)):
        IdentifyAbstractions().run(shared)
    assert [a["name"] for a in shared["abstractions"]] == ["A0", "A1"]


def test_identify_abstractions_reasks_on_unparseable_answer():
    good = "- name: Alpha\n  description: d\n  file_indices: [0]"
    shared = _shared(max_retries=2)
    with patch("nodes.call_llm", side_effect=_llm("I cannot help with that.", good)) as mock_llm:
        IdentifyAbstractions().run(shared)
    assert mock_llm.call_count == 2
    assert shared["abstractions"][0]["name"] == "Alpha"


def test_identify_abstractions_gives_up_after_max_retries():
    shared = _shared(max_retries=1)
    with patch("nodes.call_llm", side_effect=_llm("not yaml: [")):
        with pytest.raises(RepoError) as exc_info:
            IdentifyAbstractions().run(shared)
    assert exc_info.value.kind == ErrorKind.GENERATION


def test_identify_abstractions_retries_transient_llm_failures():
    """A backend that fails twice with a retryable error succeeds on the third attempt."""
    calls = []
    good = "- name: Alpha\n  description: d\n  file_indices: [0]"

    def flaky_backend(prompt, model, api_key, base_url):
        calls.append(prompt)
        if len(calls) < 3:
            raise LLMError(ErrorKind.RATE_LIMIT, "Too many requests", status=429, provider="gemini")
        return LLMResult(text=good, input_tokens=3, output_tokens=4, provider="gemini", model="m")

    shared = _shared(
        llm={"provider": "gemini"},
        retry_policy=RetryPolicy(max_attempts=3, sleep=_noop),
    )
    with patch.dict("utils.call_llm._BACKENDS", {"gemini": flaky_backend}):
        IdentifyAbstractions().run(shared)
    assert len(calls) == 3
    assert [a["name"] for a in shared["abstractions"]] == ["Alpha"]
    assert shared["token_usage"]["IdentifyAbstractions"]["calls"] == 1


def test_analyze_relationships_keeps_valid_details():
    response = """```yaml
summary: |
  A **small** project.
relationships:
  - from_abstraction: 0 # Alpha
    to_abstraction: 1 # Beta
    label: "Uses"
  - from_abstraction: 2 # Gamma
    to_abstraction: 9 # Missing
    label: "Broken"
  - from_abstraction: 1
    to_abstraction: 1
    label: "Recurses"
```"""
    shared = _shared(abstractions=ABSTRACTIONS)
    with patch("nodes.call_llm", side_effect=_llm(response)) as mock_llm:
        AnalyzeRelationships().run(shared)
    prompt = mock_llm.call_args[0][0]
    assert "0 # Alpha" in prompt
    assert "src/c.py" in prompt
    assert shared["relationships"] == {
        "summary": "A **small** project.",
        "details": [
            {"from": 0, "to": 1, "label": "Uses"},
            {"from": 1, "to": 1, "label": "Recurses"},
        ],
    }


def test_order_chapters_accepts_permutation():
    shared = _shared(abstractions=ABSTRACTIONS, relationships={"summary": "s", "details": []})
    with patch("nodes.call_llm", side_effect=_llm("```yaml\n- 2 # Gamma\n- 0 # Alpha\n- 1 # Beta\n```")):
        OrderChapters().run(shared)
    assert shared["chapter_order"] == [2, 0, 1]


def test_order_chapters_missing_index_falls_back_to_identification_order():
    shared = _shared(abstractions=ABSTRACTIONS, relationships={"summary": "s", "details": []})
    with patch("nodes.call_llm", side_effect=_llm("```yaml\n- 1 # Beta\n- 0 # Alpha\n```")):
        OrderChapters().run(shared)
    assert shared["chapter_order"] == [0, 1, 2]


def test_order_chapters_duplicate_index_falls_back():
    shared = _shared(abstractions=ABSTRACTIONS, relationships={"summary": "s", "details": []})
    with patch("nodes.call_llm", side_effect=_llm("- 0\n- 0\n- 1")):
        OrderChapters().run(shared)
    assert shared["chapter_order"] == [0, 1, 2]


def test_write_chapters_follows_order_and_links_previous_chapter():
    shared = _shared(abstractions=ABSTRACTIONS, chapter_order=[2, 0, 1])
    responses = _llm("# Gamma\nBody C", "Body A", "## B\nBody B")
    with patch("nodes.call_llm", side_effect=responses) as mock_llm:
        WriteChapters().run(shared)

    chapters = shared["chapters"]
    assert [c["title"] for c in chapters] == ["Gamma", "Alpha", "Beta"]
    assert [c["position"] for c in chapters] == [1, 2, 3]
    assert [c["filename"] for c in chapters] == ["01_gamma.md", "02_alpha.md", "03_beta.md"]
    assert [c["abstraction_indices"] for c in chapters] == [[2], [0], [1]]
    assert chapters[0]["content"] == "# Chapter 1: Gamma\nBody C"
    assert chapters[1]["content"].startswith("# Chapter 2: Alpha\n\nBody A")
    assert all(c["regenerated"] for c in chapters)

    prompts = [call[0][0] for call in mock_llm.call_args_list]
    assert "previous chapter" not in prompts[0].lower()
    assert "Previous chapter: Chapter 1: Gamma (01_gamma.md)" in prompts[1]
    assert "Previous chapter: Chapter 2: Alpha (02_alpha.md)" in prompts[2]
    assert "This is the last chapter" in prompts[2]
    assert "src/c.py" in prompts[0]
    assert shared["token_usage"]["WriteChapters"]["calls"] == 3


def test_write_chapters_keeps_finished_chapters_on_failure():
    shared = _shared(abstractions=ABSTRACTIONS, chapter_order=[0, 1, 2])
    node = WriteChapters()
    failure = LLMError(ErrorKind.API, "boom", status=500)
    with patch("nodes.call_llm", side_effect=[*_llm("Body A"), failure]):
        with pytest.raises(LLMError):
            node.run(shared)
    assert [c["title"] for c in node.chapters_written] == ["Alpha"]
    assert shared["chapters"] == []


def test_write_chapters_reuses_unchanged_cached_chapters():
    cache = store_generation_results(
        create_repo_cache(REPO),
        files=FILES,
        abstractions=ABSTRACTIONS[:2],
        relationships={"summary": "s", "details": []},
        chapter_order=[1, 0],
        chapters=[
            {"position": 1, "title": "Beta", "filename": "01_beta.md", "content": "# Chapter 1: Beta\nold",
             "abstraction_indices": [1]},
            {"position": 2, "title": "Alpha", "filename": "02_alpha.md", "content": "# Chapter 2: Alpha\nold",
             "abstraction_indices": [0]},
        ],
    )
    plan = RegenerationPlan(mode=RegenerationMode.INCREMENTAL, stale_abstractions=[0], stale_chapters=[2])
    shared = _shared(
        abstractions=ABSTRACTIONS[:2],
        chapter_order=[1, 0],
        repo_cache=cache,
        regeneration_plan=plan,
    )
    with patch("nodes.call_llm", side_effect=_llm("New alpha body")) as mock_llm:
        WriteChapters().run(shared)
    mock_llm.assert_called_once()
    beta, alpha = shared["chapters"]
    assert beta["content"] == "# Chapter 1: Beta\nold"
    assert beta["regenerated"] is False
    assert alpha["content"] == "# Chapter 2: Alpha\n\nNew alpha body"
    assert alpha["regenerated"] is True


def _combine_shared(**overrides):
    return _shared(
        abstractions=ABSTRACTIONS[:2],
        relationships={"summary": "A tiny project.", "details": [{"from": 0, "to": 1, "label": "Calls"}]},
        chapters=[
            {"position": 2, "title": "Alpha", "filename": "02_alpha.md", "content": "# Chapter 2: Alpha\n"},
            {"position": 1, "title": "Beta", "filename": "01_beta.md", "content": "# Chapter 1: Beta\n"},
        ],
        **overrides,
    )


def test_combine_tutorial_builds_index_and_chapters():
    shared = _combine_shared()
    CombineTutorial().run(shared)
    index = shared["generated_index"]
    assert index.startswith("# Tutorial: repo\n\nA tiny project.")
    assert f"**Source Repository:** [{REPO}]({REPO})" in index
    assert "```mermaid\nflowchart TD" in index
    assert 'A0 -->|"Calls"| A1' in index
    assert index.index("1. [Beta](01_beta.md)") < index.index("2. [Alpha](02_alpha.md)")
    assert index.rstrip().endswith(ATTRIBUTION)

    chapters = shared["generated_chapters"]
    assert [c["filename"] for c in chapters] == ["01_beta.md", "02_alpha.md"]
    assert chapters[0]["content"] == f"# Chapter 1: Beta\n\n---\n\n{ATTRIBUTION}\n"


def test_combine_tutorial_front_matter():
    shared = _combine_shared(chapter_front_matter=True)
    CombineTutorial().run(shared)
    content = shared["generated_chapters"][0]["content"]
    assert content.startswith("---\ntitle: Beta\nposition: 1\nproject: repo\n---\n\n# Chapter 1: Beta")


def test_combine_tutorial_skips_empty_chapters():
    shared = _combine_shared()
    shared["chapters"][0]["content"] = ""
    CombineTutorial().run(shared)
    assert [c["title"] for c in shared["generated_chapters"]] == ["Beta"]
    assert "02_alpha.md" not in shared["generated_index"]


def test_node_cannot_overwrite_another_stage_output():
    shared = _shared(abstractions=ABSTRACTIONS, relationships={"summary": "s", "details": []})
    node = OrderChapters()
    with patch("nodes.call_llm", side_effect=_llm("- 0\n- 1\n- 2", "- 2\n- 1\n- 0")):
        node.run(shared)
        with pytest.raises(Exception, match="already written"):
            node.run(shared)
    assert shared["chapter_order"] == [0, 1, 2]


def test_llm_settings_are_forwarded():
    shared = _shared(llm={"provider": "openai", "model": "gpt-x", "api_key": "k"})
    mock_llm = MagicMock(side_effect=_llm("- name: A\n  description: d\n  file_indices: [0]"))
    with patch("nodes.call_llm", mock_llm):
        IdentifyAbstractions().run(shared)
    kwargs = mock_llm.call_args[1]
    assert kwargs["provider"] == "openai"
    assert kwargs["model"] == "gpt-x"
    assert kwargs["api_key"] == "k"
    assert kwargs["base_url"] is None
