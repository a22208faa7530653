"""Backlog loading: task graph files to Task models.

Accepts a JSON or YAML task graph, either ``{"tasks": [...]}`` or a bare
list. Entry keys follow the task-graph format (``subject``, ``blockedBy``,
``acceptance``, ``verification``) with ``title`` and ``depends_on`` accepted
as aliases. Entries already completed are dropped and removed from their
dependents' blocker sets.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from ladder.core.exceptions import ConfigError, DependencyCycleError
from ladder.core.models import Task
from ladder.orchestrator.complexity import ARCHITECTURAL_SCORE, is_architecturally_complex

logger = logging.getLogger("ladder.db.backlog")

COMPLETED_STATUSES = {"completed", "done", "succeeded"}


@dataclass
class GraphReport:
    """Result of validating a task graph."""

    duplicate_ids: list[str] = field(default_factory=list)
    unknown_blockers: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.duplicate_ids and not self.unknown_blockers and not self.cycles


def stable_task_id(title: str, tags: Iterable[str] = ()) -> str:
    """Deterministic short id for entries that carry none."""
    return hashlib.sha1(f"seed:{','.join(tags)}:{title}".encode("utf-8")).hexdigest()[:10]


def _normalize_ref(ref: Any) -> str:
    return str(ref or "").replace("`", "").replace("*", "").strip().strip('"').strip()


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def _as_lines(value: Any) -> list[str]:
    """Acceptance criteria and commands: one per list item, never comma-split."""
    if value is None:
        return []
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def parse_backlog(
    data: Any,
    infer_complexity: bool = True,
    complexity_threshold: int = ARCHITECTURAL_SCORE,
) -> list[Task]:
    """Build Tasks from a decoded task graph document.

    Raises:
        ConfigError: If the document is not a task list or an entry has no title.
    """
    if isinstance(data, dict):
        entries = data.get("tasks")
    else:
        entries = data
    if not isinstance(entries, list):
        raise ConfigError("Backlog must be a list of tasks or an object with a 'tasks' list")

    raw: list[dict[str, Any]] = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ConfigError(f"Backlog entry {index} is not a mapping")
        title = str(entry.get("subject") or entry.get("title") or "").strip()
        if not title:
            raise ConfigError(f"Backlog entry {index} has no subject/title")
        tags = _as_list(entry.get("tags"))
        task_id = str(entry.get("id") or stable_task_id(title, tags))
        raw.append({**entry, "_id": task_id, "_title": title})

    # Resolve blockers written as exact subjects (best-effort)
    by_title = {r["_title"].lower(): r["_id"] for r in raw}
    ids = {r["_id"] for r in raw}
    completed = {r["_id"] for r in raw if str(r.get("status", "")).lower() in COMPLETED_STATUSES}

    tasks: list[Task] = []
    for r in raw:
        if r["_id"] in completed:
            continue
        blockers: set[str] = set()
        for ref in _as_list(r.get("blockedBy", r.get("depends_on"))):
            ref = _normalize_ref(ref)
            if ref not in ids:
                ref = by_title.get(ref.lower(), ref)
            if ref not in completed:
                blockers.add(ref)

        description = str(r.get("description") or "")
        if "complex" in r:
            complex_flag = bool(r["complex"])
        elif infer_complexity:
            complex_flag = is_architecturally_complex(r["_title"], description, complexity_threshold)
        else:
            complex_flag = False

        tasks.append(Task(
            id=r["_id"],
            title=r["_title"],
            description=description,
            acceptance_criteria=tuple(_as_lines(r.get("acceptance", r.get("acceptance_criteria")))),
            priority=int(r.get("priority") or 0),
            dependencies=frozenset(blockers),
            architecturally_complex=complex_flag,
            reviewable=bool(r.get("reviewable", False)),
            verification_commands=tuple(_as_lines(r.get("verification"))),
        ))

    if completed:
        logger.info("Dropped %d completed backlog entr%s", len(completed),
                    "y" if len(completed) == 1 else "ies")
    return tasks


def load_backlog(
    path: Path,
    infer_complexity: bool = True,
    complexity_threshold: int = ARCHITECTURAL_SCORE,
) -> list[Task]:
    """Read a JSON or YAML task graph file.

    Raises:
        ConfigError: If the file is missing or cannot be decoded.
    """
    if not path.exists():
        raise ConfigError(f"Backlog file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Invalid backlog file {path}: {e}") from e
    return parse_backlog(data, infer_complexity=infer_complexity, complexity_threshold=complexity_threshold)


# ---------------------------------------------------------------------------
# Graph checks
# ---------------------------------------------------------------------------

def find_cycles(tasks: Iterable[Task]) -> list[list[str]]:
    """Detect dependency cycles with an iterative DFS; each cycle ends where it starts."""
    by_id = {t.id: t for t in tasks}
    visited: set[str] = set()
    in_stack: set[str] = set()
    path: list[str] = []
    cycles: list[list[str]] = []

    for root in by_id:
        if root in visited:
            continue
        visited.add(root)
        in_stack.add(root)
        path.append(root)
        stack = [iter(sorted(by_id[root].dependencies))]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                in_stack.discard(path.pop())
                continue
            if dep not in by_id:
                continue
            if dep in in_stack:
                cycles.append(path[path.index(dep):] + [dep])
            elif dep not in visited:
                visited.add(dep)
                in_stack.add(dep)
                path.append(dep)
                stack.append(iter(sorted(by_id[dep].dependencies)))
    return cycles


def validate_graph(tasks: Iterable[Task], known_ids: Iterable[str] = ()) -> GraphReport:
    """Report duplicate ids, unknown blockers and cycles; ``known_ids`` are tasks already stored."""
    task_list = list(tasks)
    ids = {t.id for t in task_list} | set(known_ids)
    report = GraphReport()

    seen: set[str] = set()
    for task in task_list:
        if task.id in seen:
            report.duplicate_ids.append(f"Task id '{task.id}' is used by more than one task")
        seen.add(task.id)
        for dep in sorted(task.dependencies):
            if dep not in ids:
                report.unknown_blockers.append(f"Task '{task.title}' ({task.id}) has unknown blocker: {dep}")
        if not task.verification_commands and not task.acceptance_criteria:
            report.warnings.append(f"Task '{task.title}' has no acceptance criteria or verification commands")

    report.cycles = find_cycles(task_list)
    return report


def topological_order(tasks: Iterable[Task]) -> list[Task]:
    """Order tasks so every in-graph dependency precedes its dependents.

    Stable: among ready tasks the original order is kept. Assumes the graph
    is acyclic; raises DependencyCycleError otherwise.
    """
    task_list = list(tasks)
    ids = {t.id for t in task_list}
    placed: set[str] = set()
    ordered: list[Task] = []
    remaining = list(task_list)
    while remaining:
        progress = False
        for task in list(remaining):
            if all(dep in placed or dep not in ids for dep in task.dependencies):
                ordered.append(task)
                placed.add(task.id)
                remaining.remove(task)
                progress = True
        if not progress:
            raise DependencyCycleError(find_cycles(remaining))
    return ordered
