"""
Task dependency graph and the acyclicity guard.

An edge ``A -> B`` means "task A depends on task B" (B must finish first).
Within one project the relation must stay acyclic, so before an edge is added
the guard checks that ``A`` is not already reachable from ``B``.

The guard only reads through a ``DependencySource``; persisting the edge is the
caller's job, and the caller must serialize check-and-commit per project.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Hashable, Iterable, Optional, Protocol

from app.core.errors import Conflict, InvalidOperation, NotFound

TaskId = Hashable

SELF_DEPENDENCY = "self-dependency"
CROSS_PROJECT = "cross-project dependency"
CIRCULAR_DEPENDENCY = "circular dependency"
DUPLICATE_DEPENDENCY = "dependency already exists"


class DependencySource(Protocol):
    def get_project_id(self, task_id: TaskId) -> Optional[Hashable]:
        """Project of the task, or None when the task does not exist."""

    def get_direct_dependencies(self, task_id: TaskId) -> set:
        """Ids the task directly depends on."""


def find_path(source: DependencySource, start: TaskId, target: TaskId) -> Optional[list]:
    """Return a dependency path ``start -> ... -> target`` or None.

    Iterative DFS with a visited set: terminates on malformed (cyclic) graphs
    and never recurses, so deep chains cannot exhaust the stack.
    """
    if start == target:
        return [start]
    parents: dict = {start: None}
    stack = [start]
    while stack:
        current = stack.pop()
        for nxt in source.get_direct_dependencies(current):
            if nxt in parents:
                continue
            parents[nxt] = current
            if nxt == target:
                path = [nxt]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                path.reverse()
                return path
            stack.append(nxt)
    return None


def is_reachable(source: DependencySource, start: TaskId, target: TaskId) -> bool:
    return find_path(source, start, target) is not None


class DependencyGraphGuard:
    """Validates proposed dependency edges against a read-only source."""

    def __init__(self, source: DependencySource):
        self.source = source

    def would_create_cycle(self, from_id: TaskId, to_id: TaskId) -> bool:
        return is_reachable(self.source, to_id, from_id)

    def check_can_add(self, from_id: TaskId, to_id: TaskId) -> None:
        """Raise unless ``from_id -> to_id`` can be added safely."""
        if from_id == to_id:
            raise InvalidOperation(SELF_DEPENDENCY)

        from_project = self.source.get_project_id(from_id)
        if from_project is None:
            raise NotFound("Task not found")
        to_project = self.source.get_project_id(to_id)
        if to_project is None:
            raise NotFound("Dependency task not found")

        if from_project != to_project:
            raise InvalidOperation(CROSS_PROJECT)

        if to_id in self.source.get_direct_dependencies(from_id):
            raise Conflict(DUPLICATE_DEPENDENCY)

        if self.would_create_cycle(from_id, to_id):
            raise InvalidOperation(CIRCULAR_DEPENDENCY)


class DependencyGraph:
    """In-memory snapshot of task dependencies, indexed in both directions."""

    def __init__(self):
        self._projects: dict = {}
        self._dependencies: dict = defaultdict(set)
        self._dependents: dict = defaultdict(set)

    @classmethod
    def from_rows(
        cls,
        tasks: Iterable[tuple[TaskId, Hashable]],
        edges: Iterable[tuple[TaskId, TaskId]],
    ) -> "DependencyGraph":
        graph = cls()
        for task_id, project_id in tasks:
            graph.add_task(task_id, project_id)
        for from_id, to_id in edges:
            graph.add_edge(from_id, to_id)
        return graph

    # DependencySource

    def get_project_id(self, task_id: TaskId) -> Optional[Hashable]:
        return self._projects.get(task_id)

    def get_direct_dependencies(self, task_id: TaskId) -> set:
        return set(self._dependencies.get(task_id, ()))

    def get_direct_dependents(self, task_id: TaskId) -> set:
        return set(self._dependents.get(task_id, ()))

    # Mutation

    def add_task(self, task_id: TaskId, project_id: Hashable) -> None:
        self._projects[task_id] = project_id

    def add_edge(self, from_id: TaskId, to_id: TaskId) -> None:
        self._dependencies[from_id].add(to_id)
        self._dependents[to_id].add(from_id)

    def remove_edge(self, from_id: TaskId, to_id: TaskId) -> bool:
        """Remove both directions of an edge; False when it was absent."""
        if to_id not in self._dependencies.get(from_id, ()):
            return False
        self._dependencies[from_id].discard(to_id)
        self._dependents[to_id].discard(from_id)
        return True

    def remove_task(self, task_id: TaskId) -> None:
        for dep in self._dependencies.pop(task_id, set()):
            self._dependents[dep].discard(task_id)
        for dependent in self._dependents.pop(task_id, set()):
            self._dependencies[dependent].discard(task_id)
        self._projects.pop(task_id, None)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._projects

    def edges(self) -> list[tuple[TaskId, TaskId]]:
        return [(f, t) for f, deps in self._dependencies.items() for t in deps]
