"""Dependency references declared in work item text.

Recognized markers (case-insensitive, one declaration per line)::

    Depends on #12
    Depends on #12, #13, acme/widgets#7
    Blocked by #40
    Parent: #3

A reference is ``#N`` (same repository) or ``owner/repo#N`` (cross
repository). Anything else inside a dependency list is rejected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from agent_foundry.errors import MalformedReferenceError

_MARKER = re.compile(r"(?im)\b(depends?\s+on|blocked\s+by)\b\s*:?\s*(?P<refs>[^\n]*)")
_PARENT = re.compile(r"(?im)\bparent\s*:\s*(?P<ref>\S+)")
_REF = re.compile(r"^(?:(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+))?#(?P<number>\d+)$")
_TRAILING = ".;"


@dataclass(frozen=True, order=True)
class DependencyRef:
    """Reference to a work item, possibly in another repository."""

    number: int
    repo: str | None = None

    @property
    def is_local(self) -> bool:
        return self.repo is None

    @property
    def key(self) -> str:
        """Graph node id: ``"N"`` for local refs, ``"owner/repo#N"`` otherwise."""
        if self.repo is None:
            return str(self.number)
        return f"{self.repo}#{self.number}"

    def __str__(self) -> str:
        if self.repo is None:
            return f"#{self.number}"
        return f"{self.repo}#{self.number}"

    @classmethod
    def local(cls, number: int) -> DependencyRef:
        return cls(number=number)

    @classmethod
    def external(cls, owner: str, repo: str, number: int) -> DependencyRef:
        return cls(number=number, repo=f"{owner}/{repo}")


@dataclass
class ParsedDependencies:
    depends_on: list[DependencyRef] = field(default_factory=list)
    blocked_by: list[DependencyRef] = field(default_factory=list)
    parent: DependencyRef | None = None

    @property
    def all(self) -> list[DependencyRef]:
        """depends_on followed by blocked_by, without duplicates."""
        seen: list[DependencyRef] = []
        for ref in [*self.depends_on, *self.blocked_by]:
            if ref not in seen:
                seen.append(ref)
        return seen


def parse_reference(token: str) -> DependencyRef:
    """Parse one ``#N`` or ``owner/repo#N`` token.

    Raises:
        MalformedReferenceError: For any other format.
    """
    cleaned = token.strip().rstrip(_TRAILING).strip()
    match = _REF.match(cleaned)
    if match is None:
        raise MalformedReferenceError(token)
    number = int(match.group("number"))
    if match.group("owner"):
        return DependencyRef.external(match.group("owner"), match.group("repo"), number)
    return DependencyRef.local(number)


def parse_reference_list(text: str) -> list[DependencyRef]:
    """Parse a comma-separated list of references, preserving order."""
    refs: list[DependencyRef] = []
    for token in text.split(","):
        if not token.strip():
            continue
        ref = parse_reference(token)
        if ref not in refs:
            refs.append(ref)
    return refs


def parse_dependencies(text: str) -> ParsedDependencies:
    """Extract every dependency declaration from free text.

    Raises:
        MalformedReferenceError: If a declaration lists a malformed reference.
    """
    parsed = ParsedDependencies()
    for match in _MARKER.finditer(text or ""):
        marker = " ".join(match.group(1).lower().split())
        try:
            refs = parse_reference_list(match.group("refs"))
        except MalformedReferenceError as e:
            raise MalformedReferenceError(e.token, text=match.group(0)) from None
        target = parsed.blocked_by if marker == "blocked by" else parsed.depends_on
        for ref in refs:
            if ref not in target:
                target.append(ref)

    parent = _PARENT.search(text or "")
    if parent is not None:
        parsed.parent = parse_reference(parent.group("ref"))
    return parsed
