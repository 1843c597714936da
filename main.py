"""
repo-scrapper CLI entrypoint.

Runs the documentation flow for a GitHub repository and writes index.md plus
one Markdown file per chapter under <output-dir>/<project>.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv

from shared_schema import GeneratedChapter, ProgressUpdate, default_shared_store

load_dotenv()
from flow import run_documentation_flow_with_progress
from nodes import derive_project_name
from utils.crawl_github_files import is_valid_github_url
from utils.errors import DocumentationFlowError, ErrorKind, RepoError
from utils.patterns import resolve_patterns
from utils.repo_cache import clear_repo_cache
from utils.storage_adapters import FileStorageAdapter

logger = logging.getLogger("repo_scrapper")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments. Requires --repo-url."""
    p = argparse.ArgumentParser(
        prog="repo-scrapper",
        description="Generate a structured tutorial from a GitHub repository.",
    )
    p.add_argument(
        "--repo-url",
        type=str,
        required=True,
        help="GitHub repository URL (e.g. https://github.com/owner/repo or owner/repo).",
    )
    p.add_argument("--token", type=str, default=None, help="GitHub token (default: GITHUB_TOKEN).")
    p.add_argument(
        "--project-name",
        type=str,
        default=None,
        help="Project name for output (default: derived from repo URL).",
    )
    p.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Base directory for output (default: output).",
    )
    p.add_argument(
        "--language",
        type=str,
        default="english",
        help="Tutorial language (default: english).",
    )
    p.add_argument(
        "--include-category",
        action="append",
        default=[],
        help="Include pattern category label (repeatable, e.g. 'Backend'). Default: all categories.",
    )
    p.add_argument(
        "--exclude-category",
        action="append",
        default=[],
        help="Extra exclude pattern category label (repeatable). Required excludes always apply.",
    )
    p.add_argument("--include", action="append", default=[], help="Extra include glob (repeatable).")
    p.add_argument("--exclude", action="append", default=[], help="Extra exclude glob (repeatable).")
    p.add_argument("--max-file-size", type=int, default=500 * 1024, help="Max bytes per file (default: 512000).")
    p.add_argument("--max-abstractions", type=int, default=10, help="Max abstractions / chapters (default: 10).")
    p.add_argument("--provider", type=str, default=None, help="LLM provider (default: LLM_PROVIDER or gemini).")
    p.add_argument("--model", type=str, default=None, help="LLM model (default: provider's *_MODEL env var).")
    p.add_argument(
        "--cache-dir",
        type=str,
        default=None,
        help="Repository cache directory (default: REPO_CACHE_DIR or .repo_cache).",
    )
    p.add_argument("--no-cache", action="store_true", help="Disable the repository cache.")
    p.add_argument("--clear-cache", action="store_true", help="Drop this repository's cache before running.")
    args = p.parse_args(argv)
    if not is_valid_github_url(args.repo_url):
        p.error(f"--repo-url is not a GitHub repository URL: {args.repo_url}")
    if args.max_file_size <= 0:
        p.error("--max-file-size must be positive")
    if args.max_abstractions <= 0:
        p.error("--max-abstractions must be positive")
    return args


def patterns_from_args(args: argparse.Namespace) -> tuple[list[str], list[str]]:
    """Include/exclude globs from category labels and raw patterns."""
    return resolve_patterns(
        include_categories=args.include_category,
        exclude_categories=args.exclude_category,
        additional_includes=args.include,
        additional_excludes=args.exclude,
    )


def write_documentation(
    output_dir: str,
    project_name: str,
    index_content: str | None,
    chapters: Iterable[GeneratedChapter],
) -> Path:
    """Write index.md (when given) and chapter files; returns the tutorial directory."""
    out_path = Path(output_dir) / (project_name.replace(os.sep, "_").strip() or "output")
    out_path.mkdir(parents=True, exist_ok=True)
    if index_content is not None:
        (out_path / "index.md").write_text(index_content, encoding="utf-8")
    for chapter in chapters:
        (out_path / chapter.filename).write_text(chapter.content, encoding="utf-8")
    return out_path


def _log_progress(update: ProgressUpdate) -> None:
    logger.info("[%s/%s] %s", update.step, update.total_steps, update.label)


def main(argv: list[str] | None = None) -> int:
    """Parse args, populate shared store, run flow. Returns 0 on success, 1 on failure, 2 on usage error."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        args = parse_args(argv)
    except SystemExit as e:
        return 2 if e.code else 0  # argparse error -> 2

    try:
        include_patterns, exclude_patterns = patterns_from_args(args)
    except RepoError as e:
        logger.error("%s", e.detail)
        return 2

    storage = None
    if not args.no_cache:
        storage = FileStorageAdapter(args.cache_dir or os.environ.get("REPO_CACHE_DIR") or ".repo_cache")
        if args.clear_cache:
            clear_repo_cache(storage, args.repo_url)

    shared = default_shared_store()
    shared["repo_url"] = args.repo_url.strip()
    shared["github_token"] = args.token or os.environ.get("GITHUB_TOKEN") or None
    shared["project_name"] = args.project_name.strip() if args.project_name else None
    shared["language"] = (args.language or "english").strip()
    shared["include_patterns"] = include_patterns
    shared["exclude_patterns"] = exclude_patterns
    shared["max_file_size"] = args.max_file_size
    shared["max_abstraction_num"] = args.max_abstractions
    shared["llm"] = {"provider": args.provider, "model": args.model}
    shared["storage_adapter"] = storage

    logger.info("Starting pipeline: repo=%s, language=%s", shared["repo_url"], shared["language"])

    try:
        result = run_documentation_flow_with_progress(shared, on_progress=_log_progress)
    except DocumentationFlowError as e:
        logger.error("Pipeline failed at %s: %s", e.stage, e.detail)
        partial = e.partial_result or []
        if partial:
            project_name = derive_project_name(args.repo_url, args.project_name)
            out_dir = write_documentation(args.output_dir, project_name, None, partial)
            logger.info("Wrote %s partial chapters to %s", len(partial), out_dir)
        if e.kind == ErrorKind.RATE_LIMIT and e.retry_after:
            logger.info("Rate limited; retry in about %ss", int(e.retry_after))
        return 1

    out_dir = write_documentation(
        args.output_dir,
        result.project_name,
        result.generated_index,
        result.generated_chapters,
    )
    logger.info(
        "Tutorial written to: %s (%s chapters, regeneration=%s, tokens=%s)",
        out_dir,
        len(result.generated_chapters),
        result.regeneration_mode,
        result.token_usage.total_tokens,
    )
    print("Tutorial written to:", out_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
