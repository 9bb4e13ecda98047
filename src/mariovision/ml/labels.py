"""Character class label table.

Output index ``i`` of the model corresponds to entry ``i`` of the table.

The packaged order (alphabetical) is not confirmed against the published
Super Mario model. If predictions come back under the wrong names, point
``MARIOVISION_CLASSES_FILE`` at a JSON list in the model's training order.
"""

from __future__ import annotations

import json
from functools import cache
from pathlib import Path

PACKAGED_CLASSES_PATH = Path(__file__).resolve().parent.parent / "resources" / "character_classes.json"


def load_character_classes(path: str | Path | None = None) -> tuple[str, ...]:
    """Load an ordered label table from a JSON array of strings.

    Args:
        path: JSON file to read. Defaults to the packaged table.

    Raises:
        ValueError: If the file does not hold a non-empty list of strings.
    """
    if path is None:
        return _packaged_classes()
    return _read_classes(Path(path))


@cache
def _packaged_classes() -> tuple[str, ...]:
    return _read_classes(PACKAGED_CLASSES_PATH)


def _read_classes(path: Path) -> tuple[str, ...]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list) or not data or not all(isinstance(item, str) for item in data):
        raise ValueError(f"Class table {path} must be a non-empty JSON list of strings")
    return tuple(data)


CHARACTER_CLASSES: tuple[str, ...] = load_character_classes()
