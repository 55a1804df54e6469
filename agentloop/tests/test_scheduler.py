"""Tests for the task dependency graph."""

from agentloop.models import Task, TaskList
from agentloop.scheduler import (
    can_execute_task,
    detect_cycles,
    get_blocked_tasks,
    get_dependencies,
    get_dependents,
    get_execution_groups,
    get_execution_order,
    get_ready_tasks,
    get_topological_order,
    validate_dependencies,
)


def task(task_id: str, *depends_on: str, done: bool = False) -> Task:
    return Task(
        id=task_id,
        title=task_id.upper(),
        done=done,
        depends_on=list(depends_on) or None,
    )


def make_task_list(*tasks: Task) -> TaskList:
    return TaskList(project="Demo", tasks=list(tasks))


class TestValidateDependencies:
    """Tests for validate_dependencies()."""

    def test_valid_graph(self):
        result = validate_dependencies(make_task_list(task("a"), task("b", "a")))

        assert result.is_valid
        assert result.errors == []

    def test_missing_dependency(self):
        result = validate_dependencies(make_task_list(task("a", "ghost")))

        assert not result.is_valid
        assert [e.type for e in result.errors] == ["missing_dependency"]
        assert '"ghost"' in result.errors[0].details

    def test_self_reference(self):
        result = validate_dependencies(make_task_list(task("a", "a")))

        assert [e.type for e in result.errors] == ["self_reference"]

    def test_dependencies_without_id(self):
        task_list = make_task_list(task("a"), Task(title="Orphan", depends_on=["a"]))

        result = validate_dependencies(task_list)

        assert [e.type for e in result.errors] == ["missing_id"]
        assert result.errors[0].task_title == "Orphan"

    def test_cycle(self):
        result = validate_dependencies(make_task_list(task("a", "b"), task("b", "a")))

        assert [e.type for e in result.errors] == ["cycle"]
        assert "Dependency cycle detected" in str(result.errors[0])


class TestDetectCycles:
    """Tests for detect_cycles()."""

    def test_no_cycle(self):
        assert not detect_cycles(make_task_list(task("a"), task("b", "a"))).has_cycle

    def test_cycle_path_is_closed(self):
        result = detect_cycles(make_task_list(task("a", "c"), task("b", "a"), task("c", "b")))

        assert result.has_cycle
        assert result.cycle_nodes[0] == result.cycle_nodes[-1]
        assert set(result.cycle_nodes) == {"a", "b", "c"}

    def test_self_reference_is_not_a_cycle(self):
        assert not detect_cycles(make_task_list(task("a", "a"))).has_cycle


class TestExecutionGroups:
    """Tests for get_execution_groups()."""

    def test_independent_tasks_share_a_group(self):
        """A and C run together; B waits for A."""
        task_list = make_task_list(task("a"), task("b", "a"), task("c"))

        groups = get_execution_groups(task_list)

        assert [[t.key for t in group] for group in groups] == [["a", "c"], ["b"]]

    def test_diamond(self):
        task_list = make_task_list(task("a"), task("b", "a"), task("c", "a"), task("d", "b", "c"))

        groups = get_execution_groups(task_list)

        assert [[t.key for t in group] for group in groups] == [["a"], ["b", "c"], ["d"]]

    def test_unknown_dependency_counts_as_satisfied(self):
        groups = get_execution_groups(make_task_list(task("a", "ghost")))

        assert [[t.key for t in group] for group in groups] == [["a"]]

    def test_cycle_members_left_out(self):
        task_list = make_task_list(task("a"), task("b", "c"), task("c", "b"))

        groups = get_execution_groups(task_list)

        assert [[t.key for t in group] for group in groups] == [["a"]]

    def test_empty_list(self):
        assert get_execution_groups(make_task_list()) == []


class TestOrdering:
    """Tests for topological and execution order."""

    def test_topological_order(self):
        task_list = make_task_list(task("c", "b"), task("b", "a"), task("a"))

        assert [t.key for t in get_topological_order(task_list)] == ["a", "b", "c"]

    def test_execution_order_skips_done(self):
        task_list = make_task_list(task("a", done=True), task("b", "a"))

        assert [t.key for t in get_execution_order(task_list)] == ["b"]


class TestReadiness:
    """Tests for ready, blocked and executable checks."""

    def test_ready_and_blocked(self):
        task_list = make_task_list(task("a"), task("b", "a"), task("c"))

        assert [t.key for t in get_ready_tasks(task_list)] == ["a", "c"]
        blocked = get_blocked_tasks(task_list)
        assert [(t.key, blockers) for t, blockers in blocked] == [("b", ["A"])]

    def test_done_dependency_unblocks(self):
        task_list = make_task_list(task("a", done=True), task("b", "a"))

        assert [t.key for t in get_ready_tasks(task_list)] == ["b"]
        assert get_blocked_tasks(task_list) == []

    def test_can_execute_task(self):
        task_list = make_task_list(task("a", done=True), task("b", "a"), task("c", "b"))

        assert can_execute_task(task_list, "b").can_execute
        assert can_execute_task(task_list, "a").reason == "Task is already completed"
        assert "B" in can_execute_task(task_list, "c").reason
        assert "not found" in can_execute_task(task_list, "zzz").reason

    def test_dependents_and_dependencies(self):
        task_list = make_task_list(task("a"), task("b", "a"), task("c", "a"))

        assert [t.key for t in get_dependents(task_list, "a")] == ["b", "c"]
        assert [t.key for t in get_dependencies(task_list, "b")] == ["a"]
        assert get_dependencies(task_list, "missing") == []
