"""Extract a structured verdict from a review agent's output."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_foundry.agent.stream import AssistantMessage, ResultMessage, StreamListenerBase, StreamMessage


class ReviewVerdict(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"

    @property
    def is_blocking(self) -> bool:
        return self is ReviewVerdict.REQUEST_CHANGES


_VERDICT_WORDS = {
    "APPROVE": ReviewVerdict.APPROVED,
    "APPROVED": ReviewVerdict.APPROVED,
    "REQUEST_CHANGES": ReviewVerdict.REQUEST_CHANGES,
    "REQUEST CHANGES": ReviewVerdict.REQUEST_CHANGES,
    "CHANGES_REQUESTED": ReviewVerdict.REQUEST_CHANGES,
    "COMMENT": ReviewVerdict.COMMENT,
}

_VERDICT = re.compile(r"(?im)^[\s*#>-]*VERDICT\s*:\s*\**\s*(?P<word>[A-Za-z_ ]+?)\s*\**\s*$")
_SECTION = re.compile(r"(?i)^[\s*#>-]*(?P<name>BLOCKING|IMPORTANT|SUGGESTIONS|POSITIVE)\s*\**\s*:\s*\**\s*(?P<rest>.*)$")
_BULLET = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?P<text>.+)$")
_NONE = {"none", "n/a", "none.", "-", "nothing"}


@dataclass
class ReviewResult:
    verdict: ReviewVerdict = ReviewVerdict.PENDING
    blocking: list[str] = field(default_factory=list)
    important: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    positives: list[str] = field(default_factory=list)

    @property
    def needs_changes(self) -> bool:
        """Request-changes verdict backed by at least one blocking issue."""
        return self.verdict.is_blocking and bool(self.blocking)

    def feedback(self) -> str:
        """Review findings formatted for the next implement prompt."""
        lines = [f"Review verdict: {self.verdict.value}"]
        for title, issues in (("Blocking", self.blocking), ("Important", self.important)):
            if issues:
                lines.append(f"{title} issues:")
                lines.extend(f"- {issue}" for issue in issues)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "blocking": list(self.blocking),
            "important": list(self.important),
            "suggestions": list(self.suggestions),
            "positives": list(self.positives),
        }


def parse_review(text: str) -> ReviewResult:
    """Parse VERDICT / BLOCKING / IMPORTANT / SUGGESTIONS / POSITIVE sections."""
    result = ReviewResult()
    verdicts = _VERDICT.findall(text)
    if verdicts:
        word = " ".join(verdicts[-1].upper().split())
        result.verdict = _VERDICT_WORDS.get(word, _VERDICT_WORDS.get(word.replace(" ", "_"), ReviewVerdict.COMMENT))

    sections = {
        "BLOCKING": result.blocking,
        "IMPORTANT": result.important,
        "SUGGESTIONS": result.suggestions,
        "POSITIVE": result.positives,
    }
    current: list[str] | None = None
    for line in text.splitlines():
        header = _SECTION.match(line)
        if header:
            current = sections[header.group("name").upper()]
            inline = header.group("rest").strip()
            if inline and inline.lower() not in _NONE:
                current.append(inline)
            continue
        if _VERDICT.match(line):
            current = None
            continue
        bullet = _BULLET.match(line)
        if bullet and current is not None:
            item = bullet.group("text").strip()
            if item.lower() not in _NONE:
                current.append(item)
        elif not line.strip():
            continue
        else:
            current = None
    return result


class ReviewFeedbackExtractor(StreamListenerBase):
    """Stream listener accumulating a review agent's text.

    The final ``result`` message wins over the concatenated assistant text
    when both are present.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._final: str | None = None
        self._lock = threading.Lock()

    def on_message(self, message: StreamMessage) -> None:
        with self._lock:
            if isinstance(message, AssistantMessage):
                self._chunks.append(message.text)
            elif isinstance(message, ResultMessage) and message.result:
                self._final = message.result

    @property
    def text(self) -> str:
        with self._lock:
            if self._final is not None:
                return self._final
            return "\n".join(self._chunks)

    def result(self) -> ReviewResult:
        return parse_review(self.text)
