"""Response parsing utilities for LLM output.

Extracts code blocks and JSON from raw responses and normalizes reviewer
output into Findings. Reviewers are asked for ``{"issues": [...]}`` but in
practice answer with fenced JSON, JSON buried in prose, ``[P1]`` lines,
markdown headings or the literal ``NO_ISSUES_FOUND``; all of these are
accepted.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any, Optional

from ladder.core.exceptions import ResponseParseError
from ladder.core.models import BackendResponse, Finding, Severity, Verification

NO_ISSUES_SENTINEL = "NO_ISSUES_FOUND"

SEVERITY_SYNONYMS: dict[str, Severity] = {
    "blocker": Severity.BLOCKER,
    "critical": Severity.BLOCKER,
    "urgent": Severity.BLOCKER,
    "sev0": Severity.BLOCKER,
    "p0": Severity.BLOCKER,
    "major": Severity.MAJOR,
    "high": Severity.MAJOR,
    "medium": Severity.MAJOR,
    "sev1": Severity.MAJOR,
    "sev2": Severity.MAJOR,
    "p1": Severity.BLOCKER,
    "p2": Severity.MAJOR,
    "minor": Severity.MINOR,
    "low": Severity.MINOR,
    "sev3": Severity.MINOR,
    "p3": Severity.MINOR,
    "nit": Severity.NIT,
    "trivial": Severity.NIT,
}

CATEGORY_SYNONYMS = {
    "architecture": "arch",
    "performance": "perf",
    "test": "tests",
    "testing": "tests",
    "ui": "ux",
    "interface": "ux",
}
KNOWN_CATEGORIES = {"product", "ux", "arch", "security", "perf", "tests", "simplicity", "ops"}

_SEVERITY_ORDER = {Severity.BLOCKER: 0, Severity.MAJOR: 1, Severity.MINOR: 2, Severity.NIT: 3}
_PRIORITY_LINE = re.compile(r"^\s*\[(P[0-3])\]\s*(.+?)\s*$", re.IGNORECASE)
_LOCATOR_SUFFIX = re.compile(r"\s+-\s+(\S+:\d+)\s*$")


def extract_code_blocks(text: str, language: Optional[str] = None) -> list[str]:
    """Extract fenced code blocks from LLM output.

    Args:
        text: Raw LLM response.
        language: If specified, only return blocks with this language tag.

    Returns:
        List of code block contents (without fences).
    """
    if language:
        pattern = rf"```{re.escape(language)}\s*\n(.*?)```"
    else:
        pattern = r"```(?:\w+)?\s*\n(.*?)```"

    matches = re.findall(pattern, text, re.DOTALL)
    return [m.strip() for m in matches]


def _parse_json_at(text: str, start: int) -> Any:
    """Parse the balanced JSON value starting at ``text[start]``, or None."""
    if text[start] not in "{[":
        return None
    stack: list[str] = []
    in_string = False
    escape = False
    for i in range(start, len(text)):
        c = text[i]
        if escape:
            escape = False
            continue
        if in_string:
            if c == "\\":
                escape = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c in "{[":
            stack.append(c)
        elif c in "}]":
            opener = stack.pop() if stack else None
            if (c == "}" and opener != "{") or (c == "]" and opener != "["):
                return None
            if not stack:
                try:
                    return json.loads(text[start:i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def find_first_json(text: str) -> Any:
    """Find the first parseable JSON object or array embedded in text.

    Candidates are tried in order of signal: an ``{"issues": ...}`` object,
    values starting a line, then the first brace or bracket anywhere.
    """
    candidates: list[int] = []
    issues = re.search(r"\{\s*\"issues\"\s*:", text)
    if issues:
        candidates.append(issues.start())
    for m in re.finditer(r"^[ \t]*([{\[])", text, re.MULTILINE):
        candidates.append(m.start(1))
        if len(candidates) > 20:
            break
    for opener in "{[":
        idx = text.find(opener)
        if idx != -1:
            candidates.append(idx)

    seen: set[int] = set()
    for start in candidates:
        if start in seen:
            continue
        seen.add(start)
        parsed = _parse_json_at(text, start)
        if parsed is not None:
            return parsed
    return None


def extract_json_block(text: str) -> Optional[Any]:
    """Extract and parse the first JSON value from LLM output.

    Tries ```json fences first (first parseable block wins), then the
    whole response, then a balanced-bracket scan of the text.
    """
    for block in extract_code_blocks(text, "json"):
        try:
            return json.loads(block)
        except json.JSONDecodeError:
            continue

    try:
        return json.loads(text.strip())
    except json.JSONDecodeError:
        return find_first_json(text)


# ---------------------------------------------------------------------------
# Review normalization
# ---------------------------------------------------------------------------

def normalize_severity(value: Any) -> Severity:
    """Map a severity label or synonym to Severity; unknown labels are major."""
    return SEVERITY_SYNONYMS.get(str(value or "").strip().lower(), Severity.MAJOR)


def normalize_category(value: Any) -> Optional[str]:
    label = str(value or "").strip().lower()
    if not label:
        return None
    if label in KNOWN_CATEGORIES:
        return label
    return CATEGORY_SYNONYMS.get(label, "arch")


def _finding_from_issue(issue: Any) -> Finding:
    if not isinstance(issue, dict):
        return Finding(severity=Severity.MAJOR, title=str(issue).strip() or "Untitled issue")
    title = str(issue.get("title") or issue.get("issue") or issue.get("finding") or "").strip()
    detail_parts = [
        str(issue.get(key, "")).strip()
        for key in ("detail", "evidence", "why", "recommendation", "fix")
        if issue.get(key)
    ]
    locator = issue.get("locator") or issue.get("file")
    if not locator and isinstance(issue.get("files"), list) and issue["files"]:
        locator = str(issue["files"][0])
    return Finding(
        severity=normalize_severity(issue.get("severity")),
        title=title or "Untitled issue",
        detail="\n".join(detail_parts),
        category=normalize_category(issue.get("category")),
        locator=str(locator) if locator else None,
    )


def _priority_findings(text: str) -> list[Finding]:
    findings: list[Finding] = []
    lines = text.splitlines()
    for index, line in enumerate(lines):
        match = _PRIORITY_LINE.match(line)
        if not match:
            continue
        title = match.group(2)
        locator = None
        suffix = _LOCATOR_SUFFIX.search(title)
        if suffix:
            locator = suffix.group(1)
            title = title[:suffix.start()].strip()
        detail_lines = []
        for follow in lines[index + 1:]:
            if not follow.startswith((" ", "\t")) or _PRIORITY_LINE.match(follow):
                break
            detail_lines.append(follow.strip())
        findings.append(Finding(
            severity=normalize_severity(match.group(1)),
            title=title,
            detail="\n".join(detail_lines),
            locator=locator,
        ))
    return findings


def _heading_findings(text: str) -> list[Finding]:
    findings: list[Finding] = []
    for block in re.split(r"\n(?=#{2,}\s)", text):
        head = re.search(r"^#{2,}\s+(.*)$", block, re.MULTILINE)
        if not head:
            continue
        title = re.sub(r"^(Issue:|Finding:|Problem:)\s*", "", head.group(1), flags=re.IGNORECASE).strip()
        if not title:
            continue

        def field(name: str) -> str:
            m = re.search(rf"^\s*[-*]?\s*\**{name}\**\s*:\s*(.+)$", block, re.IGNORECASE | re.MULTILINE)
            return m.group(1).strip() if m else ""

        severity = field("Severity")
        if not severity:
            continue
        findings.append(Finding(
            severity=normalize_severity(severity),
            title=title,
            detail=field("Evidence") or field("Context"),
            category=normalize_category(field("Category")),
        ))
    return findings


def _dedupe_and_sort(findings: list[Finding]) -> list[Finding]:
    seen: set[str] = set()
    unique: list[Finding] = []
    for f in findings:
        key = f"{f.category or ''}::{f.title}".lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(f)
    return sorted(unique, key=lambda f: _SEVERITY_ORDER[f.severity])


def parse_review_output(text: str) -> list[Finding]:
    """Normalize raw reviewer output into Findings.

    Output that carries no recognizable structure at all becomes a single
    major finding, so an unreadable review can never count as clean.
    """
    stripped = (text or "").strip()
    if not stripped:
        return [Finding(severity=Severity.MAJOR, title="Empty review output", category="ops")]
    if any(line.strip() == NO_ISSUES_SENTINEL for line in stripped.splitlines()):
        return []

    data = extract_json_block(stripped)
    raw: Optional[list[Any]] = None
    if isinstance(data, list):
        raw = data
    elif isinstance(data, dict) and isinstance(data.get("issues"), list):
        raw = data["issues"]
    if raw is not None:
        return _dedupe_and_sort([_finding_from_issue(item) for item in raw])

    findings = _priority_findings(stripped) or _heading_findings(stripped)
    if findings:
        return _dedupe_and_sort(findings)

    return [Finding(
        severity=Severity.MAJOR,
        title="Unstructured review output",
        detail=stripped[:1200],
        category="ops",
        locator=f"review:{hashlib.sha1(stripped.encode('utf-8')).hexdigest()[:10]}",
    )]


# ---------------------------------------------------------------------------
# Backend normalization
# ---------------------------------------------------------------------------

def parse_backend_output(text: str) -> BackendResponse:
    """Parse a tier backend's JSON answer into a BackendResponse.

    Raises:
        ResponseParseError: If no JSON object can be found.
    """
    data = extract_json_block(text or "")
    if not isinstance(data, dict):
        raise ResponseParseError("Backend response contained no JSON object")

    verification = str(data.get("verification", "fail")).strip().lower()
    if verification not in {v.value for v in Verification}:
        verification = Verification.FAIL.value

    try:
        confidence = float(data.get("confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0
    if not math.isfinite(confidence):
        confidence = 0.0
    # A fractional float below one is a 0-1 score; integers are already 0-100.
    if isinstance(data.get("confidence"), float) and 0 < confidence < 1:
        confidence *= 100
    confidence = max(0.0, min(100.0, confidence))

    issues = _as_list(data.get("findings") or data.get("issues"))
    questions = _as_list(data.get("open_questions") or data.get("questions"))
    return BackendResponse(
        output=data.get("output"),
        verification=Verification(verification),
        confidence=confidence,
        findings=[_finding_from_issue(item) for item in issues if item],
        open_questions=[str(q).strip() for q in questions if str(q).strip()],
    )


def _as_list(value: Any) -> list[Any]:
    """A lone string is one entry; anything else that is not a list is dropped."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return value
    return []
