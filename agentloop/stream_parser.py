"""Parsing of the agent's stream-json output.

The agent prints one JSON object per line. Only assistant text and the final
result are interesting for display; everything else (tool calls, system
events) is ignored. Lines that are not JSON are passed through as raw text.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

ParsedKind = Literal["assistant_text", "final_result", "raw", "none"]


@dataclass
class ParsedLine:
    """Tagged result of parsing one output line.

    Attributes:
        kind: What the line contained
        text: Displayable text, empty for kind "none"
    """

    kind: ParsedKind
    text: str = ""


def parse_stream_line(line: str) -> ParsedLine:
    """Parse one line of stream-json output.

    Args:
        line: A single output line, without the trailing newline

    Returns:
        ParsedLine tagged assistant_text, final_result, raw (not JSON) or
        none (JSON with nothing to display, or a blank line)
    """
    stripped = line.strip()
    if not stripped:
        return ParsedLine("none")

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return ParsedLine("raw", stripped)

    if not isinstance(data, dict):
        return ParsedLine("raw", stripped)

    if data.get("type") == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            for block in content:
                if (
                    isinstance(block, dict)
                    and block.get("type") == "text"
                    and isinstance(block.get("text"), str)
                    and block["text"]
                ):
                    return ParsedLine("assistant_text", block["text"])
        return ParsedLine("none")

    if data.get("type") == "result" and data.get("subtype") == "success":
        result = data.get("result")
        if isinstance(result, str) and result:
            return ParsedLine("final_result", result)

    return ParsedLine("none")


class OutputEmitter:
    """Forward parsed text to a callback, de-duplicated and optionally throttled.

    Consecutive identical texts are forwarded once. With a throttle window,
    texts arriving inside the window are buffered and delivered together on
    the next emit outside the window, or by flush().
    """

    def __init__(
        self,
        on_output: Callable[[str], None] | None,
        throttle_ms: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.on_output = on_output
        self.throttle_ms = throttle_ms
        self._clock = clock
        self._last_text: str | None = None
        self._last_emit_at: float | None = None
        self._pending: list[str] = []

    def emit(self, parsed: ParsedLine) -> bool:
        """Offer a parsed line for display.

        Returns:
            True if the text was accepted (non-empty and not a duplicate)
        """
        if parsed.kind == "none" or not parsed.text:
            return False
        if parsed.text == self._last_text:
            return False
        self._last_text = parsed.text

        if self.throttle_ms <= 0:
            self._deliver(parsed.text)
            return True

        self._pending.append(parsed.text)
        now = self._clock()
        if self._last_emit_at is None or (now - self._last_emit_at) * 1000 >= self.throttle_ms:
            self.flush()
        return True

    def flush(self) -> None:
        """Deliver any buffered text."""
        if not self._pending:
            return
        text = "\n".join(self._pending)
        self._pending = []
        self._deliver(text)

    def _deliver(self, text: str) -> None:
        self._last_emit_at = self._clock()
        if self.on_output is not None:
            self.on_output(text)
