"""Prompt guardrails: standing rules added to every agent prompt.

guardrails.json holds the list. Each guardrail has a trigger deciding when
it applies: "always", "on-error" (only after a failed iteration or failed
verification) or "on-task-type" (never selected automatically). Disabled
guardrails stay in the file but are left out of prompts.

When the file does not exist the defaults are used. A malformed file is
logged and the defaults are used instead, so a bad edit never stops a
session.
"""

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import Field

from agentloop.errors import ConfigValidationError
from agentloop.models import Record, decode_record
from agentloop.task_list import write_json_atomic

logger = logging.getLogger(__name__)

GUARDRAILS_FILE_NAME = "guardrails.json"

GuardrailTrigger = Literal["always", "on-error", "on-task-type"]
GuardrailCategory = Literal["safety", "quality", "style", "process"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_guardrail_id(prefix: str = "guardrail") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class PromptGuardrail(Record):
    id: str
    instruction: str = Field(..., min_length=1)
    trigger: GuardrailTrigger = "always"
    category: GuardrailCategory = "quality"
    enabled: bool = True
    added_at: str = Field(default_factory=_now_iso)
    added_after_failure: str | None = None


class GuardrailsFile(Record):
    guardrails: list[PromptGuardrail] = Field(default_factory=list)


def create_default_guardrails() -> list[PromptGuardrail]:
    timestamp = _now_iso()
    return [
        PromptGuardrail(
            id="verify-before-commit",
            instruction="Verify changes work before committing",
            category="quality",
            added_at=timestamp,
        ),
        PromptGuardrail(
            id="read-existing-patterns",
            instruction="Read existing code patterns before writing new code",
            category="quality",
            added_at=timestamp,
        ),
        PromptGuardrail(
            id="fix-build-before-proceeding",
            instruction="If build fails, fix it before proceeding",
            category="safety",
            added_at=timestamp,
        ),
    ]


def format_guardrails_for_prompt(guardrails: list[PromptGuardrail]) -> str:
    """Numbered "## Guardrails" prompt section, empty if there are none."""
    if not guardrails:
        return ""
    rules = "\n".join(
        f"{number}. {guardrail.instruction}" for number, guardrail in enumerate(guardrails, 1)
    )
    return f"## Guardrails\n{rules}\n"


class GuardrailStore:
    """Loads, edits and saves guardrails.json.

    Edits save immediately. The list is cached after the first read; call
    invalidate() to pick up changes made by another process.

    Args:
        state_dir: Directory holding the guardrails file
    """

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / GUARDRAILS_FILE_NAME
        self._guardrails: list[PromptGuardrail] | None = None

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[PromptGuardrail]:
        """Read the guardrails file, falling back to the defaults."""
        if not self.path.exists():
            return create_default_guardrails()

        try:
            data = json.loads(self.path.read_text())
            return decode_record(GuardrailsFile, data, source=str(self.path)).guardrails
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed {self.path}: {e}")
        except ConfigValidationError as e:
            logger.warning(f"Ignoring invalid {self.path}: {'; '.join(e.errors)}")
        return create_default_guardrails()

    def get(self) -> list[PromptGuardrail]:
        if self._guardrails is None:
            self._guardrails = self.load()
        return self._guardrails

    def save(self, guardrails: list[PromptGuardrail]) -> None:
        write_json_atomic(
            self.path, GuardrailsFile(guardrails=guardrails).to_json_dict(), indent="\t"
        )
        self._guardrails = guardrails

    def initialize(self) -> None:
        """Write the defaults if there is no guardrails file yet."""
        if not self.exists():
            self.save(create_default_guardrails())

    def invalidate(self) -> None:
        self._guardrails = None

    def add(
        self,
        instruction: str,
        trigger: GuardrailTrigger = "always",
        category: GuardrailCategory = "quality",
        enabled: bool = True,
        added_after_failure: str | None = None,
    ) -> PromptGuardrail:
        guardrail = PromptGuardrail(
            id=generate_guardrail_id(),
            instruction=instruction,
            trigger=trigger,
            category=category,
            enabled=enabled,
            added_after_failure=added_after_failure,
        )
        self.save([*self.get(), guardrail])
        logger.info(f"Added guardrail {guardrail.id}: {instruction}")
        return guardrail

    def remove(self, guardrail_id: str) -> bool:
        """Delete a guardrail. Returns False if the id is unknown."""
        guardrails = self.get()
        remaining = [guardrail for guardrail in guardrails if guardrail.id != guardrail_id]
        if len(remaining) == len(guardrails):
            return False
        self.save(remaining)
        return True

    def toggle(self, guardrail_id: str) -> PromptGuardrail | None:
        """Flip a guardrail's enabled flag. Returns None if the id is unknown."""
        guardrail = self.get_by_id(guardrail_id)
        if guardrail is None:
            return None
        guardrail.enabled = not guardrail.enabled
        self.save(self.get())
        return guardrail

    def get_by_id(self, guardrail_id: str) -> PromptGuardrail | None:
        for guardrail in self.get():
            if guardrail.id == guardrail_id:
                return guardrail
        return None

    def get_active(self, trigger: GuardrailTrigger | None = None) -> list[PromptGuardrail]:
        """Enabled guardrails, narrowed to "always" plus trigger when one is given."""
        return [
            guardrail
            for guardrail in self.get()
            if guardrail.enabled
            and (trigger is None or guardrail.trigger in ("always", trigger))
        ]
