"""
Include/exclude glob patterns for repository crawling.

Patterns are grouped into named categories so callers can compose a pattern set
by category label ("Backend", "Documentation", "Build Output", ...) instead of
raw strings.

Glob rules used by matches_pattern:
- `*` matches within one path segment, `?` one non-separator character
- `**` matches zero or more whole segments (`**/*.ts` matches `a.ts`)
- `[abc]` / `[!abc]` character classes
- a pattern without `/` is also tried against the basename
Matching is case-sensitive. Backslashes in paths are normalized to `/`.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Sequence

from utils.errors import validation_error


@dataclass(frozen=True)
class PatternCategory:
    label: str
    patterns: tuple[str, ...]
    description: str = ""
    required: bool = False
    reason: str = ""


INCLUDED_PATTERN_CATEGORIES: tuple[PatternCategory, ...] = (
    PatternCategory(
        "Web Development",
        ("**/*.html", "**/*.css", "**/*.scss", "**/*.sass", "**/*.less",
         "**/*.js", "**/*.jsx", "**/*.ts", "**/*.tsx"),
        "HTML, CSS and JavaScript/TypeScript sources",
    ),
    PatternCategory(
        "Backend",
        ("**/*.py", "**/*.java", "**/*.go", "**/*.rb", "**/*.php",
         "**/*.c", "**/*.cpp", "**/*.cs", "**/*.rs"),
        "Python, Java, Go, Ruby, PHP, C/C++, C# and Rust sources",
    ),
    PatternCategory(
        "Data & Configuration",
        ("**/*.json", "**/*.yaml", "**/*.yml", "**/*.xml", "**/*.toml",
         "**/*.ini", "**/*.env.example"),
        "Data and configuration files",
    ),
    PatternCategory(
        "Documentation",
        ("**/*.md", "**/*.mdx", "**/*.markdown", "**/*.txt", "**/*.rst", "**/*.adoc"),
        "Markdown and plain text documentation",
    ),
    PatternCategory(
        "Mobile Development",
        ("**/*.swift", "**/*.kt", "**/*.m", "**/*.mm", "**/*.dart"),
        "iOS, Android and Flutter sources",
    ),
    PatternCategory(
        "Infrastructure",
        ("**/*.tf", "**/*.hcl", "**/Dockerfile", "**/docker-compose.yml", "**/docker-compose.yaml"),
        "Infrastructure as code and container configuration",
    ),
    PatternCategory(
        "Database",
        ("**/*.sql", "**/*.prisma", "**/*.mongodb", "**/*.graphql", "**/*.gql"),
        "Schema and query files",
    ),
    PatternCategory(
        "Shell Scripts",
        ("**/*.sh", "**/*.bash", "**/*.zsh", "**/*.bat", "**/*.cmd", "**/*.ps1"),
        "Shell and batch scripts",
    ),
    PatternCategory(
        "Machine Learning",
        ("**/models/*.py", "**/nn/*.py", "**/torch/*.py", "**/tensorflow/*.py",
         "**/keras/*.py", "**/*.ipynb"),
        "Model code and notebooks",
    ),
    PatternCategory("Smart Contracts", ("**/*.sol", "**/*.vy"), "Solidity and Vyper contracts"),
    PatternCategory(
        "System Programming",
        ("**/*.cu", "**/*.cuh", "**/*.asm", "**/*.s"),
        "CUDA and assembly sources",
    ),
    PatternCategory("Web Assembly", ("**/*.wat", "**/*.wasm"), "WebAssembly text and binary files"),
    PatternCategory(
        "Serialization & RPC",
        ("**/*.proto", "**/*.avro", "**/*.thrift"),
        "Protocol buffer, Avro and Thrift schemas",
    ),
)

EXCLUDED_PATTERN_CATEGORIES: tuple[PatternCategory, ...] = (
    PatternCategory(
        "Test Files",
        ("test/*", "tests/*", "**/test/**", "**/tests/**", "**/__tests__/**",
         "**/*test.js", "**/*spec.js", "**/*test.ts", "**/*spec.ts"),
        required=True,
        reason="Tests duplicate source logic and double LLM usage",
    ),
    PatternCategory(
        "Large Media Files",
        (
            "**/*.mp4", "**/*.mov", "**/*.avi", "**/*.mkv", "**/*.webm", "**/*.flv",
            "**/*.wmv", "**/*.m4v", "**/*.mpeg", "**/*.mpg", "**/*.mpe", "**/*.vob",
            "**/*.qt", "**/*.swf",
            "**/*.mp3", "**/*.wav", "**/*.flac", "**/*.aac", "**/*.ogg", "**/*.mp2", "**/*.m4a",
            "**/*.png", "**/*.jpg", "**/*.jpeg", "**/*.gif", "**/*.webp", "**/*.svg",
            "**/*.ico", "**/*.tiff", "**/*.bmp", "**/*.raw", "**/*.heic", "**/*.heif",
            "**/*.cr2", "**/*.nef", "**/*.tga", "**/*.dicom", "**/*.eps", "**/*.jfif",
            "**/*.exif", "**/*.pcx", "**/*.jp2", "**/*.apng", "**/*.avif",
            "**/*.psd", "**/*.ai", "**/*.xd", "**/*.sketch", "**/*.fig", "**/*.xcf",
            "**/*.pdf",
            "**/*.blend", "**/*.fbx", "**/*.obj", "**/*.stl", "**/*.3ds", "**/*.dae",
            "**/*.glb", "**/*.gltf", "**/*.3dm", "**/*.ply", "**/*.max",
            "**/*.iso", "**/*.zip", "**/*.tar", "**/*.gz", "**/*.rar", "**/*.7z",
            "**/*.bz2", "**/*.xz", "**/*.tgz",
        ),
        required=True,
        reason="Binary media holds no readable code",
    ),
    PatternCategory(
        "Binary Datasets",
        ("**/*.bin", "**/*.dat", "**/*.pkl", "**/*.h5", "**/*.hdf5"),
        required=True,
        reason="Large data files hold no readable code",
    ),
    PatternCategory(
        "Node Modules",
        ("**/node_modules/**", "**/node_module/**"),
        required=True,
        reason="Tens of thousands of third-party files",
    ),
    PatternCategory(
        "Package Files",
        ("**/package-lock.json", "**/yarn.lock", "**/pnpm-lock.yaml"),
        required=True,
        reason="Generated lock files",
    ),
    PatternCategory(
        "Minified Files",
        ("**/*.min.js", "**/*.min.css"),
        required=True,
        reason="Single-line generated bundles",
    ),
    PatternCategory(
        "Build Output",
        ("**/dist/**", "**/build/**", "**/.next/**", "**/out/**", "**/output/**",
         "**/target/**", "**/.output/**", "**/_build/**"),
        required=True,
        reason="Generated build artifacts",
    ),
    PatternCategory(
        "Git Files",
        ("**/.git/**", "**/.gitignore", "**/.gitattributes", "**/.gitmodules", "**/.github/**"),
        required=True,
        reason="Repository metadata",
    ),
    PatternCategory(
        "Dependency Dirs",
        ("**/bower_components/**", "**/.pnp/**", "**/jspm_packages/**"),
        required=True,
        reason="Vendored third-party dependencies",
    ),
    PatternCategory(
        "Python Environments and Cache",
        ("**/.venv/**", "**/venv/**", "**/.env/**", "**/env/**", "**/.virtualenv/**",
         "**/virtualenv/**", "**/__pycache__/**", "**/*.py[cod]", "**/*.so", "**/*.egg",
         "**/*.egg-info/**", "**/.pytest_cache/**"),
        required=True,
        reason="Virtualenvs and compiled bytecode",
    ),
    PatternCategory(
        "Editor Config",
        ("**/.vscode/**", "**/.idea/**", "**/.eclipse/**", "**/.nbproject/**", "**/.sublime-*"),
        required=True,
        reason="IDE settings",
    ),
    PatternCategory(
        "Coverage Reports",
        ("**/coverage/**", "**/.coverage", "**/.nyc_output/**", "**/htmlcov/**"),
        required=True,
        reason="Generated coverage reports",
    ),
    PatternCategory(
        "Logs",
        ("**/logs/**", "**/log/**", "**/*.log", "**/*.log.*"),
        required=True,
        reason="Runtime logs",
    ),
    PatternCategory(
        "Temp Files",
        ("**/tmp/**", "**/temp/**", "**/.tmp/**", "**/.temp/**", "**/*.tmp", "**/*.temp",
         "**/.cache/**", "**/cache/**"),
        required=True,
        reason="Temporary files",
    ),
    PatternCategory(
        "CI Files",
        ("**/.travis.yml", "**/.gitlab-ci.yml", "**/.circleci/**", "**/.github/workflows/**"),
        required=True,
        reason="CI configuration",
    ),
    PatternCategory(
        "TypeScript Maps",
        ("**/*.js.map", "**/*.d.ts.map"),
        required=True,
        reason="Source maps",
    ),
    PatternCategory(
        "Frontend Build Caches",
        ("**/node_modules/.cache/**", "**/.sass-cache/**", "**/.parcel-cache/**",
         "**/webpack-stats.json", "**/.turbo/**", "**/storybook-static/**"),
        required=True,
        reason="Bundler caches",
    ),
    PatternCategory(
        "Backend Build Files",
        ("**/.gradle/**", "**/.m2/**", "**/vendor/**", "**/__snapshots__/**", "**/Pods/**",
         "**/.serverless/**", "**/venv.bak/**", "**/.rts2_cache_*/**"),
        required=True,
        reason="Framework build directories",
    ),
    PatternCategory(
        "Env & Config Files",
        ("**/.env.local", "**/.env.development", "**/.env.production", "**/.direnv/**",
         "**/terraform.tfstate*", "**/cdk.out/**", "**/.terraform/**"),
        required=True,
        reason="Environment files may hold secrets",
    ),
    PatternCategory(
        "Editor & OS Files",
        ("**/.settings/**", "**/.project", "**/.classpath", "**/*.swp", "**/*~", "**/*.bak",
         "**/.DS_Store", "**/Thumbs.db"),
        required=True,
        reason="Editor and OS metadata",
    ),
    PatternCategory(
        "Compiled Binaries",
        ("**/*.class", "**/*.o", "**/*.dll", "**/*.exe", "**/*.obj", "**/*.apk", "**/*.ipa"),
        required=True,
        reason="Compiled output",
    ),
)


@dataclass(frozen=True)
class PatternPartition:
    """Result of partition_files: every input path lands in exactly one list."""

    included: list[str]
    excluded: list[str]
    not_included: list[str]


def normalize_path(path: str) -> str:
    """Use `/` separators and drop a leading `./` or `/`."""
    p = str(path).replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def _translate_class(pattern: str, i: int) -> tuple[str, int]:
    """Translate a [...] class starting at pattern[i]; return (regex, next index)."""
    j = i + 1
    if j < len(pattern) and pattern[j] in "!^":
        j += 1
    if j < len(pattern) and pattern[j] == "]":
        j += 1
    while j < len(pattern) and pattern[j] != "]":
        j += 1
    if j >= len(pattern):
        return re.escape("["), i + 1
    body = pattern[i + 1 : j].replace("\\", "\\\\")
    if body[:1] in ("!", "^"):
        body = "^" + body[1:]
    return f"[{body}]", j + 1


@lru_cache(maxsize=4096)
def _compile(pattern: str) -> re.Pattern:
    pattern = normalize_path(pattern)
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            j = i
            while j < n and pattern[j] == "*":
                j += 1
            at_segment_start = i == 0 or pattern[i - 1] == "/"
            if j - i >= 2 and at_segment_start:
                if j < n and pattern[j] == "/":
                    # "**/" -> zero or more directories
                    out.append("(?:[^/]*/)*")
                    i = j + 1
                    continue
                if j == n:
                    out.append(".*")
                    i = j
                    continue
            out.append("[^/]*")
            i = j
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            chunk, i = _translate_class(pattern, i)
            out.append(chunk)
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


def matches_pattern(path: str, pattern: str) -> bool:
    """True if path matches the glob pattern."""
    if not pattern:
        return False
    p = normalize_path(path)
    regex = _compile(pattern)
    if regex.match(p):
        return True
    if "/" not in normalize_path(pattern) and "/" in p:
        return bool(regex.match(p.rsplit("/", 1)[1]))
    return False


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(path, pat) for pat in patterns)


def partition_files(
    paths: Iterable[str],
    include_patterns: Sequence[str] = (),
    exclude_patterns: Sequence[str] = (),
) -> PatternPartition:
    """
    Split paths into included, excluded (matched an exclude pattern) and
    not_included (matched no include pattern). Exclusion wins over inclusion;
    an empty include list includes everything not excluded.
    """
    included: list[str] = []
    excluded: list[str] = []
    not_included: list[str] = []
    for path in paths:
        if exclude_patterns and matches_any(path, exclude_patterns):
            excluded.append(path)
        elif include_patterns and not matches_any(path, include_patterns):
            not_included.append(path)
        else:
            included.append(path)
    return PatternPartition(included, excluded, not_included)


def filter_files(
    paths: Iterable[str],
    include_patterns: Sequence[str] = (),
    exclude_patterns: Sequence[str] = (),
) -> list[str]:
    """Return the paths kept by the include/exclude rules, in input order."""
    return partition_files(paths, include_patterns, exclude_patterns).included


def _find_category(categories: Sequence[PatternCategory], label: str) -> PatternCategory:
    wanted = (label or "").strip().lower()
    for category in categories:
        if category.label.lower() == wanted:
            return category
    known = ", ".join(c.label for c in categories)
    raise validation_error(f"Unknown pattern category {label!r}. Known categories: {known}", field="category")


def get_all_included_patterns() -> list[str]:
    return [p for c in INCLUDED_PATTERN_CATEGORIES for p in c.patterns]


def get_all_excluded_patterns() -> list[str]:
    return [p for c in EXCLUDED_PATTERN_CATEGORIES for p in c.patterns]


def get_required_excluded_patterns() -> list[str]:
    return [p for c in EXCLUDED_PATTERN_CATEGORIES if c.required for p in c.patterns]


def get_include_patterns_by_category(label: str) -> list[str]:
    return list(_find_category(INCLUDED_PATTERN_CATEGORIES, label).patterns)


def get_exclude_patterns_by_category(label: str) -> list[str]:
    return list(_find_category(EXCLUDED_PATTERN_CATEGORIES, label).patterns)


def _dedupe(patterns: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for p in patterns:
        if p and p not in seen:
            seen.add(p)
            out.append(p)
    return out


def build_pattern_set(
    include_categories: Sequence[str] = (),
    exclude_categories: Sequence[str] = (),
    additional_includes: Sequence[str] = (),
    additional_excludes: Sequence[str] = (),
) -> tuple[list[str], list[str]]:
    """Compose (include_patterns, exclude_patterns) from category labels plus raw patterns."""
    includes = [p for label in include_categories for p in get_include_patterns_by_category(label)]
    excludes = [p for label in exclude_categories for p in get_exclude_patterns_by_category(label)]
    return _dedupe([*includes, *additional_includes]), _dedupe([*excludes, *additional_excludes])


def get_default_patterns() -> tuple[list[str], list[str]]:
    """All include categories and the required exclude categories."""
    return get_all_included_patterns(), get_required_excluded_patterns()


def resolve_patterns(
    include_categories: Sequence[str] = (),
    exclude_categories: Sequence[str] = (),
    additional_includes: Sequence[str] = (),
    additional_excludes: Sequence[str] = (),
) -> tuple[list[str], list[str]]:
    """
    Like build_pattern_set, but with no includes given every include category
    applies, and the required excludes are always added.
    """
    default_includes, required_excludes = get_default_patterns()
    includes, excludes = build_pattern_set(
        include_categories=include_categories,
        exclude_categories=exclude_categories,
        additional_includes=additional_includes,
        additional_excludes=additional_excludes,
    )
    if not include_categories and not additional_includes:
        includes = default_includes
    return includes, _dedupe([*required_excludes, *excludes])
