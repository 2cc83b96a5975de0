"""Leaves-first ordering of TODO functions by their call dependencies.

A task depends on another when its body, once implemented, is expected to
call it. Dependencies are processed before their dependents so that callees
already have accepted implementations when their callers are attempted.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, TypeVar


class _HasTaskId(Protocol):
    @property
    def task_id(self) -> str: ...


T = TypeVar("T", bound=_HasTaskId)


def order_task_ids(
    task_ids: Sequence[str],
    dependencies: Mapping[str, Sequence[str]] | None = None,
) -> list[str]:
    """Order task ids leaves-first using Kahn's algorithm.

    Only in-batch dependencies count; edges to unknown ids are ignored. Ready
    tasks are taken in lexicographic order so the result is deterministic.
    Tasks caught in a dependency cycle never become ready; they are appended
    after everything else in their original discovery order.

    Args:
        task_ids: Task ids in discovery order. Duplicates are ignored.
        dependencies: Maps a task id to the ids it depends on.

    Returns:
        Every input id exactly once.

    Example:
        >>> order_task_ids(["a", "b", "c"], {"a": ["b"], "b": ["c"]})
        ['c', 'b', 'a']
    """
    dependencies = dependencies or {}
    ids = list(dict.fromkeys(task_ids))
    in_batch = set(ids)

    # out_degree: unresolved in-batch dependencies of each task
    out_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in ids}
    for task_id in ids:
        deps = {d for d in dependencies.get(task_id, ()) if d in in_batch and d != task_id}
        out_degree[task_id] = len(deps)
        for dep in deps:
            dependents[dep].append(task_id)

    ready = sorted(task_id for task_id in ids if out_degree[task_id] == 0)
    result: list[str] = []

    while ready:
        task_id = ready.pop(0)
        result.append(task_id)

        for dependent in dependents[task_id]:
            out_degree[dependent] -= 1
            if out_degree[dependent] == 0:
                # Insert in sorted position for deterministic order
                insert_pos = 0
                for i, other in enumerate(ready):
                    if dependent < other:
                        break
                    insert_pos = i + 1
                ready.insert(insert_pos, dependent)

    if len(result) < len(ids):
        resolved = set(result)
        result.extend(task_id for task_id in ids if task_id not in resolved)

    return result


def order_tasks(
    tasks: Sequence[T],
    dependencies: Mapping[str, Sequence[str]] | None = None,
) -> list[T]:
    """Order task objects leaves-first; see ``order_task_ids``."""
    by_id: dict[str, T] = {}
    for task in tasks:
        by_id.setdefault(task.task_id, task)
    return [by_id[task_id] for task_id in order_task_ids(list(by_id), dependencies)]


def find_cyclic_task_ids(
    task_ids: Sequence[str],
    dependencies: Mapping[str, Sequence[str]] | None = None,
) -> list[str]:
    """Return ids that Kahn's algorithm could not resolve, in discovery order.

    These are tasks on a cycle or depending on one.
    """
    dependencies = dependencies or {}
    ids = list(dict.fromkeys(task_ids))
    in_batch = set(ids)
    remaining = {
        task_id: {d for d in dependencies.get(task_id, ()) if d in in_batch and d != task_id}
        for task_id in ids
    }
    changed = True
    while changed:
        changed = False
        for task_id in [t for t, deps in remaining.items() if not deps]:
            del remaining[task_id]
            for deps in remaining.values():
                deps.discard(task_id)
            changed = True
    return [task_id for task_id in ids if task_id in remaining]


__all__ = [
    "find_cyclic_task_ids",
    "order_task_ids",
    "order_tasks",
]
