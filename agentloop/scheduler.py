"""Dependency graph over the task list.

Tasks may declare ``dependsOn`` ids. The graph is used to validate those
references, to order tasks topologically and to split the list into
execution groups: tasks in one group do not depend on each other and may
run concurrently, and every group only depends on earlier groups.

Nodes are keyed by task id, or by title for tasks without an id.
"""

from dataclasses import dataclass, field
from typing import Literal

from agentloop.models import Task, TaskList

DependencyErrorType = Literal["missing_dependency", "cycle", "self_reference", "missing_id"]


@dataclass
class DependencyError:
    """One problem found in the dependency declarations."""

    type: DependencyErrorType
    task_title: str
    details: str
    task_id: str | None = None

    def __str__(self) -> str:
        return self.details


@dataclass
class DependencyValidationResult:
    is_valid: bool
    errors: list[DependencyError] = field(default_factory=list)


@dataclass
class CycleDetectionResult:
    has_cycle: bool
    cycle_nodes: list[str] = field(default_factory=list)


@dataclass
class ExecutionCheck:
    can_execute: bool
    reason: str | None = None


@dataclass
class DependencyGraph:
    """Adjacency sets: edges point from a task to the tasks it depends on."""

    nodes: dict[str, tuple[Task, int]]
    edges: dict[str, set[str]]
    reverse_edges: dict[str, set[str]]


def build_dependency_graph(task_list: TaskList) -> DependencyGraph:
    """Build the graph, ignoring references to unknown ids."""
    nodes: dict[str, tuple[Task, int]] = {}
    edges: dict[str, set[str]] = {}
    reverse_edges: dict[str, set[str]] = {}

    for index, task in enumerate(task_list.tasks):
        nodes[task.key] = (task, index)
        edges[task.key] = set()
        reverse_edges[task.key] = set()

    for task in task_list.tasks:
        for dependency_id in task.depends_on or []:
            if dependency_id in nodes:
                edges[task.key].add(dependency_id)
                reverse_edges[dependency_id].add(task.key)

    return DependencyGraph(nodes=nodes, edges=edges, reverse_edges=reverse_edges)


def validate_dependencies(task_list: TaskList) -> DependencyValidationResult:
    """Check every dependency declaration. Never raises.

    Returns:
        DependencyValidationResult listing missing ids, self references,
        references to unknown tasks and cycles
    """
    errors: list[DependencyError] = []
    known_ids = {task.id for task in task_list.tasks if task.id is not None}

    for task in task_list.tasks:
        if not task.depends_on:
            continue

        if task.id is None:
            errors.append(
                DependencyError(
                    type="missing_id",
                    task_title=task.title,
                    details=f'Task "{task.title}" has dependencies but no id field',
                )
            )

        for dependency_id in task.depends_on:
            if task.id is not None and dependency_id == task.id:
                errors.append(
                    DependencyError(
                        type="self_reference",
                        task_id=task.id,
                        task_title=task.title,
                        details=f'Task "{task.title}" depends on itself',
                    )
                )
                continue

            if dependency_id not in known_ids:
                errors.append(
                    DependencyError(
                        type="missing_dependency",
                        task_id=task.id,
                        task_title=task.title,
                        details=(
                            f'Task "{task.title}" depends on non-existent task '
                            f'with id "{dependency_id}"'
                        ),
                    )
                )

    cycle = detect_cycles(task_list)
    if cycle.has_cycle:
        errors.append(
            DependencyError(
                type="cycle",
                task_title=cycle.cycle_nodes[0],
                details=f"Dependency cycle detected: {' -> '.join(cycle.cycle_nodes)}",
            )
        )

    return DependencyValidationResult(is_valid=not errors, errors=errors)


def detect_cycles(task_list: TaskList) -> CycleDetectionResult:
    """Find one dependency cycle, if any.

    Self references are not reported here; validate_dependencies flags them
    separately.

    Returns:
        CycleDetectionResult whose cycle_nodes start and end with the same key
    """
    graph = build_dependency_graph(task_list)
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def visit(node_id: str) -> list[str] | None:
        visited.add(node_id)
        on_stack.add(node_id)
        path.append(node_id)
        for dependency_id in sorted(graph.edges[node_id]):
            if dependency_id == node_id:
                continue
            if dependency_id not in visited:
                cycle = visit(dependency_id)
                if cycle is not None:
                    return cycle
            elif dependency_id in on_stack:
                start = path.index(dependency_id)
                return path[start:] + [dependency_id]
        path.pop()
        on_stack.discard(node_id)
        return None

    for node_id in graph.nodes:
        if node_id not in visited:
            cycle = visit(node_id)
            if cycle is not None:
                return CycleDetectionResult(has_cycle=True, cycle_nodes=cycle)

    return CycleDetectionResult(has_cycle=False)


def get_execution_groups(task_list: TaskList) -> list[list[Task]]:
    """Split all tasks into dependency levels.

    Group 0 holds every task without dependencies; group k+1 holds every
    remaining task whose dependencies all sit in groups 0..k. References to
    unknown ids count as satisfied. Tasks caught in a cycle never become
    ready and are left out.

    Returns:
        Groups in execution order, each in task-list order
    """
    graph = build_dependency_graph(task_list)
    placed: set[str] = set()
    remaining = list(task_list.tasks)
    groups: list[list[Task]] = []

    while remaining:
        ready = [
            task
            for task in remaining
            if all(dep in placed or dep == task.key for dep in graph.edges[task.key])
        ]
        if not ready:
            break
        groups.append(ready)
        placed.update(task.key for task in ready)
        remaining = [task for task in remaining if task.key not in placed]

    return groups


def get_topological_order(task_list: TaskList) -> list[Task]:
    """All tasks, each after every task it depends on."""
    graph = build_dependency_graph(task_list)
    visited: set[str] = set()
    ordered: list[Task] = []

    def visit(node_id: str) -> None:
        if node_id in visited:
            return
        visited.add(node_id)
        for dependency_id in sorted(graph.edges[node_id]):
            visit(dependency_id)
        ordered.append(graph.nodes[node_id][0])

    for node_id in graph.nodes:
        visit(node_id)
    return ordered


def get_execution_order(task_list: TaskList) -> list[Task]:
    """Topological order of the tasks not yet done."""
    return [task for task in get_topological_order(task_list) if not task.done]


def _blocked_by(graph: DependencyGraph, node_id: str) -> list[str]:
    blocked = []
    for dependency_id in sorted(graph.edges[node_id]):
        dependency, _ = graph.nodes[dependency_id]
        if not dependency.done:
            blocked.append(dependency.title)
    return blocked


def get_ready_tasks(task_list: TaskList) -> list[Task]:
    """Tasks not done whose dependencies are all done."""
    graph = build_dependency_graph(task_list)
    return [
        task
        for node_id, (task, _) in graph.nodes.items()
        if not task.done and not _blocked_by(graph, node_id)
    ]


def get_blocked_tasks(task_list: TaskList) -> list[tuple[Task, list[str]]]:
    """Pending tasks waiting on unfinished dependencies, with their blockers' titles."""
    graph = build_dependency_graph(task_list)
    blocked = []
    for node_id, (task, _) in graph.nodes.items():
        if task.done:
            continue
        blockers = _blocked_by(graph, node_id)
        if blockers:
            blocked.append((task, blockers))
    return blocked


def can_execute_task(task_list: TaskList, task_id: str) -> ExecutionCheck:
    """Whether a task may start now."""
    graph = build_dependency_graph(task_list)
    node = graph.nodes.get(task_id)
    if node is None:
        return ExecutionCheck(False, f'Task with id "{task_id}" not found')

    task, _ = node
    if task.done:
        return ExecutionCheck(False, "Task is already completed")

    blockers = _blocked_by(graph, task_id)
    if blockers:
        return ExecutionCheck(
            False, f"Task is blocked by incomplete dependencies: {', '.join(blockers)}"
        )
    return ExecutionCheck(True)


def get_dependents(task_list: TaskList, task_id: str) -> list[Task]:
    """Tasks that depend directly on task_id."""
    graph = build_dependency_graph(task_list)
    return [graph.nodes[key][0] for key in sorted(graph.reverse_edges.get(task_id, set()))]


def get_dependencies(task_list: TaskList, task_id: str) -> list[Task]:
    """Tasks that task_id depends on directly."""
    graph = build_dependency_graph(task_list)
    return [graph.nodes[key][0] for key in sorted(graph.edges.get(task_id, set()))]
