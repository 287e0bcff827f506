"""
Shared helpers for working with TargetProcess collection envelopes
({"Items": [...], "Next": "..."}).
"""

from typing import Any, Dict, List, Optional


def collection_items(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Extract the Items list from a collection payload.
    Raises ValueError if Items is present but not a list.
    """
    items = payload.get("Items", [])
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("Expected Items to be a list.")
    return [e for e in items if isinstance(e, dict)]


def next_link(payload: Dict[str, Any]) -> Optional[str]:
    nxt = payload.get("Next")
    return nxt if isinstance(nxt, str) and nxt else None
