"""Language classification for bundle file paths."""

from pathlib import PurePosixPath

# File extensions we care about, mapped to language
LANGUAGE_MAP = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".css": "css",
    ".scss": "css",
    ".sass": "css",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".sql": "sql",
}

# Languages whose files are expected to ship with tests
CODE_EXTENSIONS = {".py", ".js", ".jsx", ".ts", ".tsx", ".rb", ".go", ".java"}

CONFIG_MARKERS = (
    "config", "setup", "webpack", "vite", "jest", "babel.config",
    "rollup.config", "tsconfig", "conftest", "__init__",
)


def classify_path(path: str, override: str | None = None) -> str | None:
    """Return the language for a path, or None if unknown."""
    if override:
        return override.lower()
    return LANGUAGE_MAP.get(PurePosixPath(path).suffix.lower())


def is_test_path(path: str) -> bool:
    p = PurePosixPath(path)
    name = p.name
    stem = name.split(".", 1)[0]
    if stem.startswith("test_") or stem.endswith("_test"):
        return True
    if ".test." in name or ".spec." in name:
        return True
    return any(part in ("tests", "test", "__tests__", "spec") for part in p.parts[:-1])


def is_code_path(path: str) -> bool:
    """True for source files that should be covered by a test."""
    p = PurePosixPath(path)
    if p.suffix.lower() not in CODE_EXTENSIONS:
        return False
    if is_test_path(path):
        return False
    lowered = path.lower()
    return not any(marker in lowered for marker in CONFIG_MARKERS)
