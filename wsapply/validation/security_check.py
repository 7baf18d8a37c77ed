"""Security check: scan written content for secrets and dangerous calls.

Advisory only. A hit here is reported as a warning and never stops an apply.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from wsapply.models.bundle import Bundle
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome

NAME = "SecurityCheck"


@dataclass(frozen=True)
class Rule:
    """A single content pattern with a label and severity."""

    kind: str
    label: str
    pattern: re.Pattern
    severity: str
    message: str


def _rule(kind: str, label: str, regex: str, severity: str, message: str, flags: int = 0) -> Rule:
    return Rule(kind, label, re.compile(regex, flags), severity, message)


SECRET_RULES = [
    _rule("hardcoded_secrets", "API Key",
          r"""['"]?API[_-]?KEY['"]?\s*[:=]\s*['"][A-Za-z0-9\-_]{20,}['"]""",
          "high", "Possible hardcoded API Key found", re.IGNORECASE),
    _rule("hardcoded_secrets", "Secret Key",
          r"""['"]?SECRET[_-]?KEY['"]?\s*[:=]\s*['"][A-Za-z0-9\-_]{20,}['"]""",
          "high", "Possible hardcoded Secret Key found", re.IGNORECASE),
    _rule("hardcoded_secrets", "Access Token",
          r"""['"]?ACCESS[_-]?TOKEN['"]?\s*[:=]\s*['"][A-Za-z0-9\-_]{20,}['"]""",
          "high", "Possible hardcoded Access Token found", re.IGNORECASE),
    _rule("hardcoded_secrets", "Private Key",
          r"""['"]?PRIVATE[_-]?KEY['"]?\s*[:=]\s*['"][A-Za-z0-9\-_]{20,}['"]""",
          "high", "Possible hardcoded Private Key found", re.IGNORECASE),
    _rule("hardcoded_secrets", "AWS Access Key", r"AKIA[0-9A-Z]{16}",
          "high", "Possible AWS access key found"),
    _rule("hardcoded_secrets", "Database Connection String",
          r"(?:mysql|postgres|postgresql|mongodb)://[^:/\s]+:[^@\s]+@",
          "high", "Database connection string with credentials found"),
]

DANGEROUS_RULES = [
    _rule("dangerous_patterns", "eval()", r"\beval\s*\(",
          "high", "Use of eval() can lead to code injection"),
    _rule("dangerous_patterns", "exec()", r"\bexec\s*\(",
          "high", "Use of exec() can lead to code injection"),
    _rule("dangerous_patterns", "new Function()", r"\bnew\s+Function\s*\(",
          "high", "new Function() evaluates strings as code"),
    _rule("dangerous_patterns", "os.system()", r"\bos\.system\s*\(",
          "medium", "os.system() runs through the shell"),
    _rule("dangerous_patterns", "shell=True", r"\bshell\s*=\s*True\b",
          "medium", "subprocess with shell=True is open to shell injection"),
    _rule("dangerous_patterns", "pickle.loads()", r"\bpickle\.loads?\s*\(",
          "medium", "Unpickling untrusted data can execute code"),
    _rule("dangerous_patterns", "innerHTML", r"\.innerHTML\s*=",
          "medium", "Assigning innerHTML can lead to XSS"),
    _rule("dangerous_patterns", "document.write()", r"\bdocument\.write\s*\(",
          "medium", "document.write() can lead to XSS"),
]

SQL_RULES = [
    _rule("sql_injection", "String concatenation in SQL",
          r"""(?:SELECT|INSERT|UPDATE|DELETE)\b[^;\n]*['"]\s*\+\s*\w""",
          "high", "SQL query built by string concatenation", re.IGNORECASE),
    _rule("sql_injection", "Template literal in SQL",
          r"`(?:SELECT|INSERT|UPDATE|DELETE)\b[^`]*\$\{",
          "high", "SQL query built with template interpolation", re.IGNORECASE),
    _rule("sql_injection", "f-string in SQL",
          r"""\bf['"](?:SELECT|INSERT|UPDATE|DELETE)\b[^'"]*\{""",
          "high", "SQL query built with an f-string", re.IGNORECASE),
]

ALL_RULES = SECRET_RULES + DANGEROUS_RULES + SQL_RULES


def scan_content(content: str) -> list[Rule]:
    """Return every rule matching the content, in rule order."""
    return [rule for rule in ALL_RULES if rule.pattern.search(content)]


def check_security(bundle: Bundle) -> CheckOutcome:
    issues: list[dict] = []
    scanned = 0

    for change in bundle.all_file_changes():
        if not change.writes_content or not isinstance(change.content, str):
            continue
        scanned += 1
        hits = scan_content(change.content)
        if not hits:
            continue

        by_kind: dict[str, list[Rule]] = {}
        for rule in hits:
            by_kind.setdefault(rule.kind, []).append(rule)
        for kind, rules in by_kind.items():
            severity = "high" if any(r.severity == "high" for r in rules) else "medium"
            issues.append({
                "file": change.path,
                "type": kind,
                "severity": severity,
                "issues": [{"pattern": r.label, "message": r.message} for r in rules],
            })

    if issues:
        high = sum(1 for i in issues if i["severity"] == "high")
        medium = len(issues) - high
        return CheckOutcome.failure(
            f"Found {len(issues)} security issue(s) ({high} high, {medium} medium)",
            issues_found=len(issues),
            high_severity=high,
            medium_severity=medium,
            issues=issues,
        )
    return CheckOutcome.success("No security issues detected", files_scanned=scanned)


def security_check() -> Check:
    return Check(name=NAME, level=CheckLevel.ADVISORY, run=check_security)
