"""Syntax check: best-effort parse of every written file.

Python, JSON, YAML and TOML get a real parser. Brace languages (JS/TS, CSS,
Go, Rust, Java, C-family) get a bracket-balance scan that skips strings and
comments. Anything else passes untouched.
"""

from __future__ import annotations

import ast
import json
import tomllib
from dataclasses import dataclass

import yaml

from wsapply.models.bundle import Bundle, FileChange
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome
from wsapply.validation.languages import classify_path

NAME = "SyntaxCheck"

BRACE_LANGUAGES = {"javascript", "typescript", "css", "go", "rust", "java", "kotlin", "c", "cpp", "csharp"}
# Languages where a backtick opens a string literal
BACKTICK_STRINGS = {"javascript", "typescript", "go"}

PAIRS = {")": "(", "]": "[", "}": "{"}


@dataclass(frozen=True)
class SyntaxProblem:
    message: str
    line: int | None = None

    def render(self) -> str:
        if self.line is not None:
            return f"line {self.line}: {self.message}"
        return self.message


def check_syntax(bundle: Bundle) -> CheckOutcome:
    errors: list[dict] = []
    validated = 0

    for change in bundle.all_file_changes():
        if not change.writes_content or not isinstance(change.content, str):
            continue
        problem = validate_file(change)
        if problem is None:
            validated += 1
        else:
            errors.append({"file": change.path, "error": problem.render()})

    if errors:
        names = ", ".join(e["file"] for e in errors)
        return CheckOutcome.failure(
            f"Syntax errors found in {len(errors)} file(s): {names}",
            files_with_errors=len(errors),
            files_validated=validated,
            errors=errors,
        )
    return CheckOutcome.success(
        f"All files have valid syntax ({validated} files)", files_validated=validated
    )


def validate_file(change: FileChange) -> SyntaxProblem | None:
    """Parse one file's content; return the first problem found, if any."""
    language = classify_path(change.path, change.language)
    content = change.content or ""

    if language == "python":
        return _parse_python(content, change.path)
    if language == "json":
        return _parse_json(content)
    if language == "yaml":
        return _parse_yaml(content)
    if language == "toml":
        return _parse_toml(content)
    if language in BRACE_LANGUAGES:
        return check_brackets(content, language)
    return None


def _parse_python(content: str, path: str) -> SyntaxProblem | None:
    try:
        ast.parse(content, filename=path)
    except SyntaxError as e:
        return SyntaxProblem(f"SyntaxError: {e.msg}", e.lineno)
    except ValueError as e:  # null bytes
        return SyntaxProblem(f"ValueError: {e}")
    return None


def _parse_json(content: str) -> SyntaxProblem | None:
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return SyntaxProblem(f"JSONError: {e.msg}", e.lineno)
    return None


def _parse_yaml(content: str) -> SyntaxProblem | None:
    try:
        list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        problem = getattr(e, "problem", None) or str(e)
        return SyntaxProblem(f"YAMLError: {problem}", line)
    return None


def _parse_toml(content: str) -> SyntaxProblem | None:
    try:
        tomllib.loads(content)
    except tomllib.TOMLDecodeError as e:
        return SyntaxProblem(f"TOMLError: {e}")
    return None


def check_brackets(content: str, language: str) -> SyntaxProblem | None:
    """Scan for unbalanced (), [] and {} outside strings and comments."""
    stack: list[tuple[str, int]] = []
    quotes = {'"', "'"} | ({"`"} if language in BACKTICK_STRINGS else set())
    i = 0
    line = 1
    n = len(content)

    while i < n:
        ch = content[i]
        nxt = content[i + 1] if i + 1 < n else ""

        if ch == "\n":
            line += 1
        elif ch == "/" and nxt == "/" and language != "css":
            while i < n and content[i] != "\n":
                i += 1
            continue
        elif ch == "/" and nxt == "*":
            end = content.find("*/", i + 2)
            if end == -1:
                return SyntaxProblem("Unterminated block comment", line)
            line += content.count("\n", i, end)
            i = end + 2
            continue
        elif ch in quotes:
            end, line, ok = _skip_string(content, i, ch, line)
            if not ok:
                return SyntaxProblem(f"Unterminated string literal ({ch})", line)
            i = end
            continue
        elif ch in "([{":
            stack.append((ch, line))
        elif ch in PAIRS:
            if not stack:
                return SyntaxProblem(f"Unexpected closing '{ch}'", line)
            opener, opened_at = stack.pop()
            if opener != PAIRS[ch]:
                return SyntaxProblem(
                    f"Mismatched '{ch}' closes '{opener}' opened on line {opened_at}", line
                )
        i += 1

    if stack:
        opener, opened_at = stack[-1]
        return SyntaxProblem(f"Unclosed '{opener}'", opened_at)
    return None


def _skip_string(content: str, start: int, quote: str, line: int) -> tuple[int, int, bool]:
    """Return (index after closing quote, current line, terminated)."""
    i = start + 1
    n = len(content)
    while i < n:
        ch = content[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "\n":
            if quote != "`":
                return i, line, False
            line += 1
        if ch == quote:
            return i + 1, line, True
        i += 1
    return i, line, False


def syntax_check() -> Check:
    return Check(name=NAME, level=CheckLevel.BLOCKING, run=check_syntax)
