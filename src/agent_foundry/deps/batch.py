"""Load work item batches from YAML files.

A batch file is a list of mappings (or a mapping with an ``items`` list)::

    - id: 38
      description: Add the parser
    - id: 42
      description: Wire the parser into the CLI
      depends_on: ["#38", "#40"]
    - id: 43
      body: |
        Follow-up cleanup.
        Depends on #42
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from agent_foundry.deps.graph import WorkItem
from agent_foundry.errors import MalformedReferenceError


class BatchFileError(ValueError):
    """Raised when a batch file cannot be read or is malformed."""


def parse_work_items(data: Any, source: str = "<batch>") -> list[WorkItem]:
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise BatchFileError(f"{source}: expected a list of work items")
    items: list[WorkItem] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict) or "id" not in entry:
            raise BatchFileError(f"{source}: entry {index} must be a mapping with an 'id'")
        try:
            items.append(WorkItem.from_dict(entry))
        except MalformedReferenceError as e:
            raise BatchFileError(f"{source}: work item {entry['id']}: {e}") from e
        except ValueError as e:
            raise BatchFileError(f"{source}: work item {entry['id']}: {e}") from e
    return items


def load_work_items(path: Path | str) -> list[WorkItem]:
    """Read a batch file.

    Raises:
        BatchFileError: If the file is missing, is not valid YAML, or an
            entry is malformed.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise BatchFileError(f"Cannot read batch file {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise BatchFileError(f"Invalid YAML in {path}: {e}") from e
    return parse_work_items(data, source=str(path))
