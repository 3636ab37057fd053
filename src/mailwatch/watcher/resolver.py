"""Translate message count changes into new message identifiers."""

from __future__ import annotations

from typing import List

from .models import CountSnapshot


def resolve_new_identifiers(snapshot: CountSnapshot) -> List[int]:
    """Return the sequence numbers that appeared between two counts.

    Sequence numbers are 1-based, so a change from 10 to 13 yields
    ``[11, 12, 13]``. A count that stayed the same or shrank yields nothing.
    """
    if snapshot.current_count <= snapshot.previous_count:
        return []
    return list(range(snapshot.previous_count + 1, snapshot.current_count + 1))


__all__ = ["resolve_new_identifiers"]
