"""Recursive merge of partial checkout input into an order document."""
from __future__ import annotations

from typing import Any, Dict, Optional

# never overwritten by client input at the top level
PROTECTED_TOP_LEVEL_KEYS = frozenset({"user", "id"})

# from this depth on, keys missing in the target may be created
OPEN_DEPTH = 2


def merge_sent_params(
    target: Optional[Dict[str, Any]],
    update: Dict[str, Any],
    level: int = 0,
) -> Dict[str, Any]:
    """Merge ``update`` into ``target`` and return the merged mapping.

    Below ``OPEN_DEPTH`` only keys that already exist in ``target`` are
    updated, so clients cannot invent top-level fields. Nested mappings are
    created on demand and merged recursively; an explicit ``None`` clears the
    value. ``target`` is modified in place when it is a mapping.
    """
    if target is None:
        target = {}
    for key, value in update.items():
        if level == 0 and key in PROTECTED_TOP_LEVEL_KEYS:
            continue
        if key not in target and level < OPEN_DEPTH:
            continue
        if isinstance(value, dict):
            current = target.get(key)
            if not isinstance(current, dict):
                current = {}
            target[key] = merge_sent_params(current, value, level + 1)
        else:
            target[key] = value
    return target
