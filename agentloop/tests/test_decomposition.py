"""Tests for decomposition parsing and application."""

import json
from unittest.mock import MagicMock

from agentloop.decomposition import (
    DECOMPOSITION_END,
    DECOMPOSITION_MARKER,
    DECOMPOSITION_START,
    DecompositionHandler,
    DecompositionRequest,
    apply_decomposition,
    format_decomposition_for_progress,
    parse_decomposition_request,
)
from agentloop.models import Task, TaskList


def make_output(payload) -> str:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"Thinking...\n{DECOMPOSITION_MARKER}\n{DECOMPOSITION_START}{body}{DECOMPOSITION_END}"


def make_request(title: str = "Big task", subtasks: int = 2) -> DecompositionRequest:
    return DecompositionRequest.model_validate(
        {
            "originalTaskTitle": title,
            "reason": "Too large",
            "suggestedSubtasks": [
                {"title": f"Part {i}", "description": f"Do part {i}", "steps": [f"step {i}"]}
                for i in range(1, subtasks + 1)
            ],
        }
    )


def make_task_list() -> TaskList:
    return TaskList(
        project="Demo",
        tasks=[
            Task(title="First", done=True),
            Task(title="Big task"),
            Task(title="Last"),
        ],
    )


class TestParseDecompositionRequest:
    """Tests for parse_decomposition_request()."""

    def test_no_marker(self):
        result = parse_decomposition_request("All done, nothing to split")

        assert result.detected is False
        assert result.request is None
        assert result.error is None

    def test_valid_request(self):
        output = make_output(
            {
                "originalTaskTitle": "Big task",
                "reason": "Too large",
                "suggestedSubtasks": [{"title": "Part 1", "description": "d", "steps": ["s"]}],
            }
        )

        result = parse_decomposition_request(output)

        assert result.detected is True
        assert result.request.original_task_title == "Big task"
        assert [s.title for s in result.request.suggested_subtasks] == ["Part 1"]

    def test_missing_payload(self):
        result = parse_decomposition_request(f"{DECOMPOSITION_MARKER} but no payload")

        assert result.detected is True
        assert result.request is None
        assert "missing or malformed" in result.error

    def test_invalid_json(self):
        result = parse_decomposition_request(make_output("{not json"))

        assert result.detected is True
        assert "Failed to parse decomposition JSON" in result.error

    def test_empty_subtasks_rejected(self):
        output = make_output(
            {"originalTaskTitle": "Big task", "reason": "Too large", "suggestedSubtasks": []}
        )

        result = parse_decomposition_request(output)

        assert result.request is None
        assert "Invalid decomposition request structure" in result.error

    def test_wrong_types_rejected(self):
        """Strict decoding refuses a numeric title."""
        output = make_output(
            {
                "originalTaskTitle": 42,
                "reason": "Too large",
                "suggestedSubtasks": [{"title": "Part", "description": "d", "steps": []}],
            }
        )

        assert parse_decomposition_request(output).request is None


class TestApplyDecomposition:
    """Tests for apply_decomposition()."""

    def test_replaces_in_place(self):
        """Subtasks take the original task's position."""
        task_list = make_task_list()

        result = apply_decomposition(task_list, make_request())

        assert result.success
        assert result.subtasks_created == 2
        assert [t.title for t in result.task_list.tasks] == ["First", "Part 1", "Part 2", "Last"]
        assert result.task_list.tasks[1].steps == ["step 1"]
        assert result.task_list.tasks[1].done is False

    def test_input_not_modified(self):
        task_list = make_task_list()

        apply_decomposition(task_list, make_request())

        assert [t.title for t in task_list.tasks] == ["First", "Big task", "Last"]

    def test_match_is_case_insensitive(self):
        result = apply_decomposition(make_task_list(), make_request(title="BIG TASK"))

        assert result.success

    def test_unknown_task(self):
        result = apply_decomposition(make_task_list(), make_request(title="Nope"))

        assert not result.success
        assert "not found" in result.error

    def test_done_task_not_replaced(self):
        result = apply_decomposition(make_task_list(), make_request(title="First"))

        assert not result.success
        assert "already marked as done" in result.error


class TestDecompositionHandler:
    """Tests for DecompositionHandler."""

    def test_handle_saves_and_restarts(self):
        save = MagicMock()
        progress = MagicMock()
        restart = MagicMock()
        handler = DecompositionHandler(
            2, save_task_list=save, append_progress=progress, on_restart_iteration=restart
        )

        assert handler.handle(make_request(), make_task_list()) is True

        saved = save.call_args.args[0]
        assert len(saved.tasks) == 4
        progress.assert_called_once()
        restart.assert_called_once()
        assert handler.decomposition_count("big task") == 1

    def test_limit_per_task(self):
        """Past the limit the request is ignored."""
        save = MagicMock()
        handler = DecompositionHandler(1, save_task_list=save)

        assert handler.handle(make_request(), make_task_list()) is True
        assert handler.handle(make_request(), make_task_list()) is False
        assert save.call_count == 1

    def test_missing_task_list(self):
        save = MagicMock()
        handler = DecompositionHandler(2, save_task_list=save)

        assert handler.handle(make_request(), None) is False
        save.assert_not_called()

    def test_failed_apply_does_not_count(self):
        handler = DecompositionHandler(2, save_task_list=MagicMock())

        assert handler.handle(make_request(title="Nope"), make_task_list()) is False
        assert handler.decomposition_count("Nope") == 0

    def test_reset(self):
        handler = DecompositionHandler(2, save_task_list=MagicMock())
        handler.handle(make_request(), make_task_list())

        handler.reset()

        assert handler.decomposition_count("Big task") == 0

    def test_format_for_progress(self):
        text = format_decomposition_for_progress(make_request())

        assert "Original task: Big task" in text
        assert "  1. Part 1" in text
        assert "  2. Part 2" in text
