"""Dependency check: relative imports must resolve.

Not part of the default gate. Files outside the bundle are only visible
through ``known_paths``, so callers that want this check must supply the
workspace's file list.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable

from wsapply.models.bundle import Bundle
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome
from wsapply.validation.languages import classify_path

NAME = "DependencyCheck"

JS_IMPORT_PATTERNS = [
    re.compile(r"""import\s+[^'"]*?\s+from\s+['"]([^'"]+)['"]"""),
    re.compile(r"""import\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
]
PY_RELATIVE_IMPORT = re.compile(r"^\s*from\s+(\.+)([\w.]*)\s+import\s+([\w, ]+)", re.MULTILINE)

JS_EXTENSIONS = ("", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".json")
JS_INDEX_FILES = ("index.js", "index.jsx", "index.ts", "index.tsx")


def js_imports(code: str) -> list[str]:
    found: list[str] = []
    for pattern in JS_IMPORT_PATTERNS:
        found.extend(m.group(1) for m in pattern.finditer(code))
    return found


def _resolve_js(spec: str, from_file: str, paths: set[str]) -> bool:
    target = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), spec))
    if any(target + ext in paths for ext in JS_EXTENSIONS):
        return True
    return any(posixpath.join(target, index) in paths for index in JS_INDEX_FILES)


def _resolve_python(dots: str, module: str, names: str, from_file: str, paths: set[str]) -> bool:
    base = posixpath.dirname(from_file)
    for _ in range(len(dots) - 1):
        base = posixpath.dirname(base)
    if module:
        target = posixpath.join(base, *module.split("."))
        return f"{target}.py" in paths or posixpath.join(target, "__init__.py") in paths
    # "from . import x": each name is a sibling module or package
    for name in (n.strip() for n in names.split(",")):
        if not name:
            continue
        target = posixpath.join(base, name)
        if f"{target}.py" not in paths and posixpath.join(target, "__init__.py") not in paths:
            return False
    return True


def check_dependencies(bundle: Bundle, known_paths: Iterable[str] = ()) -> CheckOutcome:
    changes = bundle.all_file_changes()
    deleted = {c.path for c in changes if not c.writes_content}
    paths = (set(known_paths) | {c.path for c in changes if c.writes_content}) - deleted

    missing: list[dict] = []
    resolved = 0

    for change in changes:
        if not change.writes_content or not isinstance(change.content, str):
            continue
        language = classify_path(change.path, change.language)

        if language in ("javascript", "typescript"):
            for spec in js_imports(change.content):
                if not spec.startswith("."):
                    continue  # package import
                if _resolve_js(spec, change.path, paths):
                    resolved += 1
                else:
                    missing.append({"file": change.path, "import": spec})
        elif language == "python":
            for m in PY_RELATIVE_IMPORT.finditer(change.content):
                dots, module, names = m.groups()
                if _resolve_python(dots, module, names, change.path, paths):
                    resolved += 1
                else:
                    missing.append({"file": change.path, "import": f"{dots}{module}"})

    if missing:
        return CheckOutcome.failure(
            f"Missing {len(missing)} import(s)",
            missing_imports=missing,
            resolved_count=resolved,
        )
    return CheckOutcome.success(f"All imports resolved ({resolved} imports)", resolved_count=resolved)


def dependency_check(known_paths: Iterable[str] = ()) -> Check:
    paths = frozenset(known_paths)

    def run(bundle: Bundle) -> CheckOutcome:
        return check_dependencies(bundle, paths)

    return Check(name=NAME, level=CheckLevel.ADVISORY, run=run)
