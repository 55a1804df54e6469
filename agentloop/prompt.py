"""Prompt construction for agent invocations.

The agent reads the task list and progress log itself; the prompt tells it
where they are, how to work, and how to signal completion or request a task
split. Extra sections (project instructions, guardrails, session memory,
verification output and retry context) are appended when present.
"""

from pathlib import Path

from agentloop.decomposition import (
    DECOMPOSITION_END,
    DECOMPOSITION_MARKER,
    DECOMPOSITION_START,
)

COMPLETION_MARKER = "<promise>COMPLETE</promise>"


def build_prompt(
    task_list_path: Path,
    progress_path: Path,
    specific_task: str | None = None,
    instructions: str | None = None,
    guardrails: str | None = None,
    memory: str | None = None,
    retry_context: str | None = None,
    verification_context: str | None = None,
) -> str:
    """Build the prompt for one agent invocation.

    Args:
        task_list_path: Task list (PRD) file the agent works from
        progress_path: Progress log the agent reads and appends to
        specific_task: Title of the task to work on, instead of letting the
            agent pick the next one
        instructions: Project-specific instructions
        guardrails: Guardrails section with the rules the agent must follow
        memory: Session memory section (lessons, patterns, avoided approaches)
        retry_context: Block describing the previous failed attempt
        verification_context: Output of failed verification checks

    Returns:
        The full prompt text
    """
    task_step = (
        f'Work on this task: "{specific_task}"'
        if specific_task
        else "Find the next most important task to work on"
    )

    sections = [
        f"@{task_list_path} @{progress_path}",
        "",
        "You are a coding agent working on a long running project.",
        "Your workflow is as follows:",
        f"1. Get oriented by reading {progress_path} and {task_list_path}",
        f"2. {task_step}",
        "3. Implement ONLY that task",
        "4. Verify your implementation",
        f"5. Update {progress_path} and set the task as done in {task_list_path}",
        "6. Stage and commit your changes with a meaningful commit message",
        "",
        "## Rules",
        "- ONLY work on ONE task at a time",
        "- Always leave the codebase in a buildable state",
        "- If the build fails, fix it before committing",
        "- Ensure you are using the proper tools in this project",
        "",
        "## Task Decomposition",
        "If the task is too large to finish in one session, do not start it. Instead "
        f"output {DECOMPOSITION_MARKER} followed by a JSON object between "
        f"{DECOMPOSITION_START} and {DECOMPOSITION_END} with the keys "
        '"originalTaskTitle", "reason" and "suggestedSubtasks" (a list of objects '
        'with "title", "description" and "steps").',
    ]

    for extra in (instructions, guardrails, memory, verification_context, retry_context):
        if extra:
            sections.extend(["", extra.strip()])

    sections.extend(
        [
            "",
            "IMPORTANT:",
            f"If all tasks in {task_list_path} are marked as done, output EXACTLY this: "
            f"{COMPLETION_MARKER}",
            "",
        ]
    )
    return "\n".join(sections)
