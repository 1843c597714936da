"""Unit tests for include/exclude pattern matching and category composition."""

import pytest

from utils.errors import ErrorKind, RepoError
from utils.patterns import (
    build_pattern_set,
    filter_files,
    get_default_patterns,
    get_exclude_patterns_by_category,
    get_include_patterns_by_category,
    matches_any,
    matches_pattern,
    partition_files,
    resolve_patterns,
)


def test_double_star_matches_root_and_nested():
    """**/*.ts matches files at the root and at any depth."""
    assert matches_pattern("a.ts", "**/*.ts")
    assert matches_pattern("src/lib/a.ts", "**/*.ts")
    assert not matches_pattern("a.tsx", "**/*.ts")


def test_single_star_stays_in_segment():
    assert matches_pattern("tests/x.py", "tests/*")
    assert not matches_pattern("tests/unit/x.py", "tests/*")


def test_directory_pattern_matches_everything_below():
    assert matches_pattern("node_modules/x.js", "**/node_modules/**")
    assert matches_pattern("web/node_modules/pkg/index.js", "**/node_modules/**")
    assert not matches_pattern("src/modules/x.js", "**/node_modules/**")


def test_character_class_and_question_mark():
    assert matches_pattern("pkg/mod.pyc", "**/*.py[cod]")
    assert not matches_pattern("pkg/mod.py", "**/*.py[cod]")
    assert matches_pattern("a1.txt", "a?.txt")
    assert not matches_pattern("a/b.txt", "a?b.txt")


def test_pattern_without_slash_matches_basename():
    assert matches_pattern("deep/dir/Makefile", "Makefile")


def test_backslashes_are_normalized():
    assert matches_pattern("src\\app\\main.ts", "**/*.ts")


def test_matching_is_case_sensitive():
    assert not matches_pattern("README.MD", "**/*.md")


def test_empty_pattern_never_matches():
    assert not matches_pattern("a.py", "")
    assert not matches_any("a.py", [])


def test_partition_exclusion_wins_over_inclusion():
    """A path matching both an include and an exclude pattern is excluded."""
    result = partition_files(
        ["a.ts", "node_modules/x.js", "b.txt"],
        include_patterns=["**/*.ts", "**/*.js"],
        exclude_patterns=["**/node_modules/**"],
    )
    assert result.included == ["a.ts"]
    assert result.excluded == ["node_modules/x.js"]
    assert result.not_included == ["b.txt"]


def test_filter_files_without_includes_keeps_everything_not_excluded():
    assert filter_files(["a.py", "dist/a.js"], exclude_patterns=["**/dist/**"]) == ["a.py"]


def test_category_lookup():
    assert "**/*.py" in get_include_patterns_by_category("Backend")
    assert "**/node_modules/**" in get_exclude_patterns_by_category("Node Modules")


def test_unknown_category_is_validation_error():
    with pytest.raises(RepoError) as exc_info:
        get_include_patterns_by_category("No Such Category")
    assert exc_info.value.kind == ErrorKind.VALIDATION
    assert exc_info.value.status == 400


def test_build_pattern_set_dedupes_and_appends_raw_patterns():
    includes, excludes = build_pattern_set(
        include_categories=["Backend", "Backend"],
        additional_includes=["**/*.py", "scripts/*.sh"],
        additional_excludes=["legacy/**"],
    )
    assert includes.count("**/*.py") == 1
    assert includes[-1] == "scripts/*.sh"
    assert excludes == ["legacy/**"]


def test_default_patterns_exclude_node_modules():
    includes, excludes = get_default_patterns()
    assert "**/*.ts" in includes
    assert "**/node_modules/**" in excludes


def test_resolve_patterns_defaults_and_required_excludes():
    """No includes given -> every include category; required excludes always present."""
    includes, excludes = resolve_patterns(additional_excludes=["legacy/**"])
    default_includes, required = get_default_patterns()
    assert includes == default_includes
    assert set(required) <= set(excludes)
    assert "legacy/**" in excludes


def test_resolve_patterns_with_explicit_includes():
    includes, excludes = resolve_patterns(additional_includes=["**/*.ts"])
    assert includes == ["**/*.ts"]
    assert "**/node_modules/**" in excludes
