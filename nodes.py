"""
PocketFlow nodes for the repo-scrapper pipeline.
"""

import json
import logging
import re
from typing import Any, Optional

import yaml
from pocketflow import BatchNode, Node

from shared_schema import TokenUsage, record_token_usage, write_stage_output
from utils.call_llm import call_llm, resolve_provider
from utils.context_helpers import create_llm_context, get_content_for_indices
from utils.crawl_github_files import CrawlerOptions, DEFAULT_MAX_FILE_SIZE, parse_github_url, server_github_crawler
from utils.errors import ErrorKind, RepoError, generation_error, validation_error
from utils.prompts import (
    AbstractionPromptParams,
    ChapterOrderPromptParams,
    ChapterPromptParams,
    ChapterRef,
    RelationshipPromptParams,
    build_abstraction_prompt,
    build_chapter_content_prompt,
    build_chapter_order_prompt,
    build_relationship_prompt,
)
from utils.repo_cache import (
    RegenerationMode,
    RegenerationPlan,
    analyze_file_changes,
    changed_generation_settings,
    determine_regeneration_plan,
    is_cache_complete,
    load_repo_cache,
    restore_abstractions,
    restore_relationships,
)
from utils.retry import RetryPolicy

logger = logging.getLogger("repo_scrapper")

ATTRIBUTION = "Generated by repo-scrapper"


def _extract_yaml_block(text: str) -> str:
    """Extract YAML from markdown code block if present, else return text."""
    text = text.strip()
    for pattern in (r"```ya?ml\s*\n(.*?)\n```", r"```json\s*\n(.*?)\n```", r"```\s*\n(.*?)\n```"):
        m = re.search(pattern, text, re.DOTALL)
        if m:
            return m.group(1).strip()
    return text


def _extract_yaml_list_block(text: str) -> str:
    """Extract the first YAML list block from text, if present."""
    lines = text.strip().splitlines()
    start = next((i for i, line in enumerate(lines) if line.lstrip().startswith("- ")), None)
    if start is None:
        return text
    block_lines = []
    for line in lines[start:]:
        if line.lstrip().startswith("- ") or line.strip() == "" or line.startswith((" ", "\t")):
            block_lines.append(line)
            continue
        # Stop on a new top-level line that is not part of the list.
        break
    return "\n".join(block_lines).strip() or text


def _load_structured(text: str) -> Any:
    """Parse text as YAML, falling back to strict JSON."""
    if not text:
        return None
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        pass
    try:
        return json.loads(text)
    except ValueError:
        return None


def _try_parse_list(text: str, *keys: str) -> Optional[list]:
    """Try parsing a YAML or JSON list from text; a dict wrapping the list under one of keys is unwrapped."""
    data = _load_structured(text)
    if isinstance(data, dict):
        data = next((data[k] for k in keys if isinstance(data.get(k), list)), data)
    return data if isinstance(data, list) else None


def _try_parse_dict(text: str) -> Optional[dict]:
    data = _load_structured(text)
    return data if isinstance(data, dict) else None


def _parse_list_response(response: str, *keys: str) -> Optional[list]:
    data = _try_parse_list(_extract_yaml_block(response), *keys)
    if data is None:
        data = _try_parse_list(_extract_yaml_list_block(response), *keys)
    return data


def _parse_index_from_ref(ref: Any) -> int:
    """Convert '0 # path', '0 # Name' or 0 to int index."""
    if isinstance(ref, bool):
        raise TypeError("boolean is not an index")
    if isinstance(ref, int):
        return ref
    s = str(ref).strip()
    first = s.split("#")[0].strip()
    if not first and s.split():
        first = s.split()[0]
    return int(first)


def derive_project_name(repo_url: Any, existing: Any) -> str:
    """Derive project name from repo_url if not already set."""
    if existing and str(existing).strip():
        return str(existing).strip()
    ref = parse_github_url(str(repo_url or ""))
    if ref is not None:
        return ref.repo
    url = str(repo_url or "").strip().rstrip("/")
    return url.split("/")[-1].removesuffix(".git") or "project"


def chapter_filename(position: int, title: str) -> str:
    safe_name = "".join(c if c.isalnum() else "_" for c in title).lower()
    return f"{position:02d}_{safe_name}.md"


def _normalize_heading(content: str, position: int, title: str) -> str:
    """Force the first line to `# Chapter N: Title`."""
    heading = f"# Chapter {position}: {title}"
    lines = content.strip().split("\n")
    if lines and lines[0].strip().startswith("#"):
        lines[0] = heading
        return "\n".join(lines)
    return f"{heading}\n\n{content.strip()}"


def _language(shared: dict) -> str:
    return (shared.get("language") or "english").strip().lower()


def generation_settings(shared: dict) -> dict:
    """Settings that shape the generated text; cached docs are reused only when they match."""
    llm = shared.get("llm") or {}
    return {
        "language": _language(shared),
        "max_abstraction_num": int(shared.get("max_abstraction_num") or 10),
        "provider": resolve_provider(llm.get("provider")),
        "model": llm.get("model") or None,
    }


def _plan(shared: dict) -> RegenerationPlan:
    plan = shared.get("regeneration_plan")
    return plan if isinstance(plan, RegenerationPlan) else RegenerationPlan(mode=RegenerationMode.FULL)


def _reusable_cache(shared: dict) -> Any:
    """The loaded cache when the plan is incremental, else None."""
    cache = shared.get("repo_cache")
    if _plan(shared).mode == RegenerationMode.INCREMENTAL and is_cache_complete(cache):
        return cache
    return None


def _is_parse_failure(exc: BaseException) -> bool:
    return isinstance(exc, RepoError) and exc.kind == ErrorKind.GENERATION


def _parse_retry_policy(max_retries: Any) -> RetryPolicy:
    """Re-ask with the same prompt when the answer cannot be parsed."""
    return RetryPolicy(max_attempts=max(1, int(max_retries or 1)), base_delay=0.0, is_retryable=_is_parse_failure)


class _LLM:
    """call_llm bound to one node's provider settings, counting tokens."""

    def __init__(self, config: Optional[dict], retry_policy: Optional[RetryPolicy]) -> None:
        config = config or {}
        self.kwargs = {k: config.get(k) for k in ("provider", "model", "api_key", "base_url")}
        self.retry_policy = retry_policy
        self.usage = TokenUsage()

    def ask(self, prompt: str) -> str:
        result = call_llm(prompt, retry_policy=self.retry_policy, **self.kwargs)
        self.usage.input_tokens += result.input_tokens
        self.usage.output_tokens += result.output_tokens
        self.usage.calls += 1
        return result.text


def _llm_settings(shared: dict) -> dict:
    return {"llm": dict(shared.get("llm") or {}), "retry_policy": shared.get("retry_policy")}


class FetchRepo(Node):
    """
    Crawl the repository and decide how much documentation needs regenerating.

    prep: Read repo_url, token, patterns, max_file_size, storage adapter from shared.
    exec: Crawl via server_github_crawler; with a storage adapter, load the cache
          and compute the file changes and regeneration plan.
    post: Write files, project_name, crawl_stats, plan; return "cached" when
          nothing changed so the flow restores the previous documentation.
    """

    def prep(self, shared: dict) -> dict:
        repo_url = str(shared.get("repo_url") or "").strip()
        if not repo_url:
            raise validation_error("repo_url must be set in shared store", field="repo_url")
        return {
            "repo_url": repo_url,
            "project_name": derive_project_name(repo_url, shared.get("project_name")),
            "github_token": shared.get("github_token"),
            "include_patterns": shared.get("include_patterns") or (),
            "exclude_patterns": shared.get("exclude_patterns") or (),
            "max_file_size": shared.get("max_file_size") or DEFAULT_MAX_FILE_SIZE,
            "retry_policy": shared.get("retry_policy"),
            "storage_adapter": shared.get("storage_adapter"),
            "full_regeneration_threshold": shared.get("full_regeneration_threshold"),
            "generation_settings": generation_settings(shared),
        }

    def exec(self, prep_res: dict) -> dict:
        repo_url = prep_res["repo_url"]
        logger.info("Crawling repository: %s", repo_url)
        options = CrawlerOptions(
            repo_url=repo_url,
            token=prep_res.get("github_token"),
            include_patterns=prep_res.get("include_patterns"),
            exclude_patterns=prep_res.get("exclude_patterns"),
            max_file_size=prep_res.get("max_file_size"),
            retry_policy=prep_res.get("retry_policy") or RetryPolicy(),
        )
        result = server_github_crawler(options)
        files = sorted(result.files.items())
        if not files:
            raise generation_error("No files matched the include/exclude patterns", phase="fetch")

        adapter = prep_res.get("storage_adapter")
        if adapter is None:
            return {
                "files": files,
                "stats": result.stats,
                "cache": None,
                "changes": None,
                "plan": RegenerationPlan(mode=RegenerationMode.FULL, reason="Repository cache disabled"),
            }
        cache = load_repo_cache(adapter, repo_url)
        complete = is_cache_complete(cache)
        if cache is not None and not complete:
            logger.warning("Cache for %s is incomplete; regenerating everything", repo_url)
        changes = analyze_file_changes(files, cache.files if cache else {})
        changed_settings = changed_generation_settings(cache, prep_res.get("generation_settings") or {})
        plan = determine_regeneration_plan(
            changes,
            cache.abstractions if complete else [],
            cache.chapters if complete else [],
            prep_res.get("full_regeneration_threshold"),
            changed_settings,
        )
        return {"files": files, "stats": result.stats, "cache": cache, "changes": changes, "plan": plan}

    def post(self, shared: dict, prep_res: dict, exec_res: dict) -> str:
        plan: RegenerationPlan = exec_res["plan"]
        changes = exec_res.get("changes")
        write_stage_output(
            shared,
            "FetchRepo",
            files=exec_res["files"],
            project_name=prep_res["project_name"],
            crawl_stats=exec_res["stats"].model_dump(),
            file_changes=changes.model_dump() if changes is not None else None,
            regeneration_plan=plan,
            repo_cache=exec_res.get("cache"),
        )
        logger.info(
            "FetchRepo: files=%s, project_name=%s, regeneration=%s (%s)",
            len(exec_res["files"]),
            prep_res["project_name"],
            plan.mode.value,
            plan.reason,
        )
        return "cached" if plan.mode == RegenerationMode.NONE else "default"


class RestoreCachedDocs(Node):
    """
    Reuse the previous run's abstractions, relationships, order and chapters
    when no file changed. File paths are mapped back to current indices.
    """

    def prep(self, shared: dict) -> dict:
        return {"cache": shared.get("repo_cache"), "files": shared.get("files") or []}

    def exec(self, prep_res: dict) -> dict:
        cache = prep_res["cache"]
        if not is_cache_complete(cache):
            raise generation_error("Cached documentation is missing or incomplete", phase="restore")
        chapters = [
            {
                "position": c.position,
                "title": c.title,
                "filename": c.filename,
                "content": c.content,
                "abstraction_indices": list(c.abstraction_indices),
                "regenerated": False,
                "generated_at": c.generated_at,
            }
            for c in sorted(cache.chapters, key=lambda c: c.position)
        ]
        return {
            "abstractions": restore_abstractions(cache, prep_res["files"]),
            "relationships": restore_relationships(cache),
            "chapter_order": list(cache.chapter_order),
            "chapters": chapters,
        }

    def post(self, shared: dict, prep_res: dict, exec_res: dict) -> str:
        write_stage_output(shared, "RestoreCachedDocs", **exec_res)
        logger.info("Restored %s cached chapters", len(exec_res["chapters"]))
        return "default"


class IdentifyAbstractions(Node):
    """
    Identify core abstractions from files using LLM; output name, description, file indices.

    prep: Read files, project_name, language, max_abstraction_num; build index # path context.
    exec: Prompt call_llm for a YAML list of {name, description, file_indices}; parse and
          validate indices. Unparseable answers are re-asked up to max_retries times.
    post: Write abstractions to shared.
    """

    def prep(self, shared: dict) -> dict:
        files = shared.get("files") or []
        cache = _reusable_cache(shared)
        if cache is not None:
            return {"reuse": restore_abstractions(cache, files)}

        file_context, file_info = create_llm_context(files)
        return {
            "reuse": None,
            "n_files": len(files),
            "project_name": shared.get("project_name") or "project",
            "language": _language(shared),
            "file_context": file_context,
            "file_listing": "\n".join(f"- {i} # {path}" for i, path in file_info),
            "max_abstraction_num": int(shared.get("max_abstraction_num") or 10),
            "max_retries": shared.get("max_retries", 3),
            **_llm_settings(shared),
        }

    def exec(self, prep_res: dict) -> tuple[list[dict], TokenUsage]:
        if prep_res.get("reuse") is not None:
            logger.info("Reusing %s cached abstractions", len(prep_res["reuse"]))
            return prep_res["reuse"], TokenUsage()

        logger.info("Identifying abstractions using LLM...")
        llm = _LLM(prep_res.get("llm"), prep_res.get("retry_policy"))
        prompt = build_abstraction_prompt(
            AbstractionPromptParams(
                project_name=prep_res["project_name"],
                file_context=prep_res["file_context"],
                file_listing=prep_res["file_listing"],
                max_abstraction_num=prep_res["max_abstraction_num"],
                language=prep_res["language"],
            )
        )
        abstractions = _parse_retry_policy(prep_res.get("max_retries")).run(
            lambda attempt: self._parse(llm.ask(prompt), prep_res["n_files"]),
            description="IdentifyAbstractions",
        )
        limit = prep_res["max_abstraction_num"]
        if len(abstractions) > limit:
            logger.warning("LLM returned %s abstractions; keeping the first %s", len(abstractions), limit)
            abstractions = abstractions[:limit]
        logger.info("Identified %s abstractions: %s", len(abstractions), [a["name"] for a in abstractions])
        return abstractions, llm.usage

    @staticmethod
    def _parse(response: str, n_files: int) -> list[dict]:
        data = _parse_list_response(response, "abstractions", "items", "list")
        if not isinstance(data, list):
            raise generation_error("LLM did not return a YAML list for abstractions", phase="identify_abstractions")

        abstractions: list[dict] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or item.get("Name") or "").strip()
            if not name:
                continue
            desc = item.get("description") or item.get("Description") or ""
            files_raw = item.get("file_indices") or item.get("files") or item.get("Files") or []
            if not isinstance(files_raw, list):
                files_raw = [files_raw]
            indices = set()
            for ref in files_raw:
                try:
                    idx = _parse_index_from_ref(ref)
                except (ValueError, TypeError):
                    logger.warning("Ignoring invalid file reference %r for %s", ref, name)
                    continue
                if 0 <= idx < n_files:
                    indices.add(idx)
            abstractions.append({"name": name, "description": str(desc).strip(), "files": sorted(indices)})
        if not abstractions:
            raise generation_error("LLM returned no usable abstractions", phase="identify_abstractions")
        return abstractions

    def post(self, shared: dict, prep_res: dict, exec_res: tuple[list[dict], TokenUsage]) -> str:
        abstractions, usage = exec_res
        write_stage_output(shared, "IdentifyAbstractions", abstractions=abstractions)
        record_token_usage(shared, "IdentifyAbstractions", usage)
        return "default"


class AnalyzeRelationships(Node):
    """
    Generate project summary and relationship details (from, to, label) using indices.

    prep: Read abstractions, files, project_name, language; build context with get_content_for_indices.
    exec: Prompt call_llm for YAML {summary, relationships: [{from_abstraction, to_abstraction, label}]};
          out-of-range indices are dropped, self-loops and duplicates kept in order.
    post: Write relationships to shared.
    """

    def prep(self, shared: dict) -> dict:
        cache = _reusable_cache(shared)
        if cache is not None:
            return {"reuse": restore_relationships(cache)}

        abstractions = shared.get("abstractions") or []
        files = shared.get("files") or []
        context_lines = ["Identified Abstractions:"]
        all_file_indices: set[int] = set()
        listing = []
        for i, abstr in enumerate(abstractions):
            file_indices_str = ", ".join(map(str, abstr.get("files") or []))
            context_lines.append(
                f"- Index {i}: {abstr.get('name', '')} (Relevant file indices: [{file_indices_str}])\n"
                f"  Description: {abstr.get('description', '')}"
            )
            listing.append(f"{i} # {abstr.get('name', '')}")
            all_file_indices.update(abstr.get("files") or [])

        context_lines.append("\nRelevant File Snippets (Referenced by Index and Path):")
        content_map = get_content_for_indices(files, sorted(all_file_indices))
        context_lines.append("\n\n".join(f"--- File {key} ---\n{content}" for key, content in content_map.items()))
        return {
            "reuse": None,
            "project_name": shared.get("project_name") or "project",
            "language": _language(shared),
            "abstraction_listing": "\n".join(listing),
            "context": "\n".join(context_lines),
            "num_abstractions": len(abstractions),
            "max_retries": shared.get("max_retries", 3),
            **_llm_settings(shared),
        }

    def exec(self, prep_res: dict) -> tuple[dict, TokenUsage]:
        if prep_res.get("reuse") is not None:
            logger.info("Reusing cached relationships")
            return prep_res["reuse"], TokenUsage()

        logger.info("Analyzing relationships using LLM...")
        llm = _LLM(prep_res.get("llm"), prep_res.get("retry_policy"))
        prompt = build_relationship_prompt(
            RelationshipPromptParams(
                project_name=prep_res["project_name"],
                abstraction_listing=prep_res["abstraction_listing"],
                context=prep_res["context"],
                language=prep_res["language"],
            )
        )
        relationships = _parse_retry_policy(prep_res.get("max_retries")).run(
            lambda attempt: self._parse(llm.ask(prompt), prep_res["num_abstractions"]),
            description="AnalyzeRelationships",
        )
        logger.info("Extracted %s relationships", len(relationships["details"]))
        return relationships, llm.usage

    @staticmethod
    def _parse(response: str, n_abs: int) -> dict:
        data = _try_parse_dict(_extract_yaml_block(response))
        if data is None:
            raise generation_error("LLM did not return a YAML dict for relationships", phase="analyze_relationships")

        summary = data.get("summary") or data.get("Summary") or ""
        details_raw = data.get("relationships") or data.get("details") or data.get("Details") or []
        if not isinstance(details_raw, list):
            logger.warning("LLM returned non-list for relationships; got: %s", type(details_raw).__name__)
            details_raw = []

        details: list[dict] = []
        for item in details_raw:
            if not isinstance(item, dict):
                logger.warning("Skipping invalid relationship item (not a dict): %s", item)
                continue
            from_ref = item.get("from_abstraction", item.get("from"))
            to_ref = item.get("to_abstraction", item.get("to"))
            try:
                from_idx = _parse_index_from_ref(from_ref)
                to_idx = _parse_index_from_ref(to_ref)
            except (ValueError, TypeError):
                logger.warning("Skipping invalid relationship item: %s", item)
                continue
            if 0 <= from_idx < n_abs and 0 <= to_idx < n_abs:
                label = item.get("label") or item.get("Label") or ""
                details.append({"from": from_idx, "to": to_idx, "label": str(label).strip()})
            else:
                logger.warning("Skipping relationship with out-of-range index: %s", item)
        return {"summary": str(summary).strip(), "details": details}

    def post(self, shared: dict, prep_res: dict, exec_res: tuple[dict, TokenUsage]) -> str:
        relationships, usage = exec_res
        write_stage_output(shared, "AnalyzeRelationships", relationships=relationships)
        record_token_usage(shared, "AnalyzeRelationships", usage)
        return "default"


class OrderChapters(Node):
    """
    Determine chapter order (abstraction indices) for the tutorial.

    Anything other than a permutation of all abstraction indices falls back to
    identification order.
    """

    def prep(self, shared: dict) -> dict:
        abstractions = shared.get("abstractions") or []
        cache = _reusable_cache(shared)
        if cache is not None:
            return {"reuse": list(cache.chapter_order), "num_abstractions": len(abstractions)}

        relationships = shared.get("relationships") or {}
        language = _language(shared)
        summary_note = f" (Note: Project Summary might be in {language.capitalize()})" if language != "english" else ""
        names = [a.get("name", "") for a in abstractions]
        context = f"Project Summary{summary_note}:\n{relationships.get('summary', '')}\n\n"
        context += "Relationships (Indices refer to abstractions above):\n"
        for rel in relationships.get("details") or []:
            from_name = names[rel["from"]] if rel["from"] < len(names) else ""
            to_name = names[rel["to"]] if rel["to"] < len(names) else ""
            context += f"- From {rel['from']} ({from_name}) to {rel['to']} ({to_name}): {rel.get('label', '')}\n"
        return {
            "reuse": None,
            "num_abstractions": len(abstractions),
            "project_name": shared.get("project_name") or "project",
            "language": language,
            "abstraction_listing": "\n".join(f"- {i} # {name}" for i, name in enumerate(names)),
            "context": context,
            **_llm_settings(shared),
        }

    def exec(self, prep_res: dict) -> tuple[list[int], TokenUsage]:
        n_abs = prep_res["num_abstractions"]
        if prep_res.get("reuse") is not None:
            logger.info("Reusing cached chapter order")
            return prep_res["reuse"], TokenUsage()

        llm = _LLM(prep_res.get("llm"), prep_res.get("retry_policy"))
        prompt = build_chapter_order_prompt(
            ChapterOrderPromptParams(
                project_name=prep_res["project_name"],
                abstraction_listing=prep_res["abstraction_listing"],
                context=prep_res["context"],
                language=prep_res["language"],
            )
        )
        response = llm.ask(prompt)
        order = self._parse(response, n_abs)
        if order is None:
            order = list(range(n_abs))
            logger.warning("LLM chapter order was not a permutation of %s abstractions; using %s", n_abs, order)
        logger.info("Determined chapter order: %s", order)
        return order, llm.usage

    @staticmethod
    def _parse(response: str, n_abs: int) -> Optional[list[int]]:
        data = _parse_list_response(response, "order", "chapter_order", "chapters")
        if not isinstance(data, list):
            return None
        order: list[int] = []
        for item in data:
            try:
                order.append(_parse_index_from_ref(item))
            except (ValueError, TypeError):
                return None
        return order if sorted(order) == list(range(n_abs)) else None

    def post(self, shared: dict, prep_res: dict, exec_res: tuple[list[int], TokenUsage]) -> str:
        order, usage = exec_res
        write_stage_output(shared, "OrderChapters", chapter_order=order)
        record_token_usage(shared, "OrderChapters", usage)
        return "default"


class WriteChapters(BatchNode):
    """
    Generate one chapter per abstraction in chapter order (BatchNode, sequential).

    Chapters an incremental plan marks as unchanged are copied from the cache.
    Finished chapters are kept on `chapters_written` as they complete so a
    failure part-way still yields them.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.chapters_written: list[dict] = []

    def prep(self, shared: dict) -> list[dict]:
        chapter_order = shared.get("chapter_order") or []
        abstractions = shared.get("abstractions") or []
        files = shared.get("files") or []
        project_name = shared.get("project_name") or "project"
        language = _language(shared)
        self.chapters_written = []

        cache = _reusable_cache(shared)
        cached_by_position = {c.position: c for c in cache.chapters} if cache is not None else {}
        stale = set(_plan(shared).stale_chapters) if cache is not None else set()

        refs = []
        for i, abs_idx in enumerate(chapter_order):
            title = abstractions[abs_idx].get("name", "") or f"Chapter {i + 1}"
            refs.append(ChapterRef(number=i + 1, title=title, filename=chapter_filename(i + 1, title)))
        chapter_listing = "\n".join(f"{r.number}. [{r.title}]({r.filename})" for r in refs)

        items: list[dict] = []
        for i, abs_idx in enumerate(chapter_order):
            ref = refs[i]
            abstraction = abstractions[abs_idx]
            cached = cached_by_position.get(ref.number)
            reuse = cached is not None and ref.number not in stale and cached.title == ref.title
            file_context = "\n\n".join(
                f"--- File: {key.split('# ', 1)[-1]} ---\n{content}"
                for key, content in get_content_for_indices(files, abstraction.get("files") or []).items()
            )
            items.append(
                {
                    "ref": ref,
                    "abstraction_index": abs_idx,
                    "description": abstraction.get("description") or "",
                    "file_context": file_context,
                    "chapter_listing": chapter_listing,
                    "prev_chapter": refs[i - 1] if i > 0 else None,
                    "next_chapter": refs[i + 1] if i + 1 < len(refs) else None,
                    "language": language,
                    "project_name": project_name,
                    "cached_content": cached.content if reuse else None,
                    "cached_at": cached.generated_at if reuse else None,
                    **_llm_settings(shared),
                }
            )
        logger.info(
            "Prepared %s chapters for writing (%s reused from cache)",
            len(items),
            sum(1 for item in items if item["cached_content"] is not None),
        )
        return items

    def exec(self, item: dict) -> tuple[dict, TokenUsage]:
        ref: ChapterRef = item["ref"]
        chapter = {
            "position": ref.number,
            "title": ref.title,
            "filename": ref.filename,
            "abstraction_indices": [item["abstraction_index"]],
        }
        if item["cached_content"] is not None:
            chapter.update(content=item["cached_content"], regenerated=False, generated_at=item["cached_at"])
            self.chapters_written.append(chapter)
            return chapter, TokenUsage()

        logger.info("Writing chapter %s: %s", ref.number, ref.title)
        llm = _LLM(item.get("llm"), item.get("retry_policy"))
        prompt = build_chapter_content_prompt(
            ChapterPromptParams(
                project_name=item["project_name"],
                chapter_number=ref.number,
                name=ref.title,
                description=item["description"],
                file_context=item["file_context"],
                chapter_listing=item["chapter_listing"],
                previous_chapter=item["prev_chapter"],
                next_chapter=item["next_chapter"],
                language=item["language"],
            )
        )
        content = llm.ask(prompt)
        chapter.update(content=_normalize_heading(content, ref.number, ref.title), regenerated=True, generated_at=None)
        self.chapters_written.append(chapter)
        return chapter, llm.usage

    def post(self, shared: dict, prep_res: list[dict], exec_res_list: list[tuple[dict, TokenUsage]]) -> str:
        chapters = [chapter for chapter, _ in exec_res_list]
        usage = TokenUsage()
        for _, u in exec_res_list:
            usage.input_tokens += u.input_tokens
            usage.output_tokens += u.output_tokens
            usage.calls += u.calls
        write_stage_output(shared, "WriteChapters", chapters=chapters)
        record_token_usage(shared, "WriteChapters", usage)
        logger.info(
            "Written all %s chapters (%s regenerated).",
            len(chapters),
            sum(1 for c in chapters if c["regenerated"]),
        )
        return "default"


def build_mermaid_diagram(abstractions: list[dict], details: list[dict]) -> str:
    lines = ["flowchart TD"]
    for i, abstr in enumerate(abstractions):
        name = abstr.get("name", "").replace('"', "'")
        lines.append(f'    A{i}["{name}"]')
    for rel in details:
        label = rel.get("label", "").replace('"', "'").replace("\n", " ")
        max_label_len = 30
        if len(label) > max_label_len:
            label = label[: max_label_len - 3] + "..."
        lines.append(f'    A{rel.get("from", 0)} -->|"{label}"| A{rel.get("to", 0)}')
    return "\n".join(lines)


class CombineTutorial(Node):
    """
    Build the index page (summary, repository link, Mermaid relationship diagram,
    chapter list) and the final chapter documents. Nothing is written to disk;
    callers persist generated_index and generated_chapters.
    """

    def prep(self, shared: dict) -> dict:
        return {
            "project_name": shared.get("project_name") or "project",
            "relationships": shared.get("relationships") or {},
            "abstractions": shared.get("abstractions") or [],
            "chapters": shared.get("chapters") or [],
            "repo_url": shared.get("repo_url") or "",
            "front_matter": bool(shared.get("chapter_front_matter")),
        }

    def exec(self, prep_res: dict) -> dict:
        project_name = prep_res["project_name"]
        relationships = prep_res["relationships"]
        abstractions = prep_res["abstractions"]
        chapters = sorted(prep_res["chapters"], key=lambda c: c["position"])
        repo_url = prep_res["repo_url"]

        index_content = f"# Tutorial: {project_name}\n\n"
        index_content += f"{relationships.get('summary') or ''}\n\n"
        if repo_url:
            index_content += f"**Source Repository:** [{repo_url}]({repo_url})\n\n"
        index_content += "```mermaid\n"
        index_content += build_mermaid_diagram(abstractions, relationships.get("details") or []) + "\n"
        index_content += "```\n\n"
        index_content += "## Chapters\n\n"

        generated = []
        for chapter in chapters:
            if not chapter.get("content"):
                logger.warning("Chapter %s (%s) has no content; skipping it", chapter["position"], chapter["title"])
                continue
            index_content += f"{chapter['position']}. [{chapter['title']}]({chapter['filename']})\n"
            content = chapter["content"].rstrip("\n") + f"\n\n---\n\n{ATTRIBUTION}\n"
            if prep_res["front_matter"]:
                meta = yaml.safe_dump(
                    {"title": chapter["title"], "position": chapter["position"], "project": project_name},
                    sort_keys=False,
                    allow_unicode=True,
                )
                content = f"---\n{meta}---\n\n{content}"
            generated.append(
                {
                    "position": chapter["position"],
                    "title": chapter["title"],
                    "filename": chapter["filename"],
                    "content": content,
                    "regenerated": chapter.get("regenerated", True),
                }
            )
        index_content += f"\n\n---\n\n{ATTRIBUTION}\n"
        return {"index": index_content, "chapters": generated}

    def post(self, shared: dict, prep_res: dict, exec_res: dict) -> str:
        write_stage_output(
            shared,
            "CombineTutorial",
            generated_index=exec_res["index"],
            generated_chapters=exec_res["chapters"],
        )
        logger.info("CombineTutorial: index and %s chapters ready", len(exec_res["chapters"]))
        return "default"
