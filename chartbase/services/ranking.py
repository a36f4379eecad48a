"""
Ranking Engine

Turns per-entity play counts into a positioned leaderboard.

Positions are dense (1..N) with no shared ranks: ties on play count are
fully ordered by a tie-break key, so the same counts always produce the same
chart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

TieBreak = Callable[[str], Any]


@dataclass(frozen=True)
class RankedEntry:
    """One positioned row of a leaderboard."""

    entity_id: str
    position: int
    play_count: int


def entity_id_tie_break(entity_id: str) -> Any:
    """Default tie-break: entity id ascending."""
    return entity_id


def name_tie_break(names: Mapping[str, str]) -> TieBreak:
    """
    Tie-break by display name (case-insensitive), then entity id.

    Entities missing from ``names`` sort after named ones.
    """

    def key(entity_id: str) -> Any:
        name = names.get(entity_id)
        return (name is None, (name or "").casefold(), entity_id)

    return key


def rank(
    counts: Mapping[str, int],
    tie_break: TieBreak | None = None,
    limit: int | None = None,
) -> list[RankedEntry]:
    """
    Rank entities by play count.

    Args:
        counts: entity id -> play count (entities with no plays are skipped)
        tie_break: key function ordering entities with equal counts; must be
            total and deterministic. Defaults to entity id ascending.
        limit: keep only the top ``limit`` entries

    Returns:
        Entries ordered by position, positions exactly 1..N
    """
    tie_key = tie_break or entity_id_tie_break
    ordered = sorted(
        ((entity_id, count) for entity_id, count in counts.items() if count > 0),
        key=lambda item: (-item[1], tie_key(item[0]), item[0]),
    )
    if limit is not None:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        ordered = ordered[:limit]

    return [
        RankedEntry(entity_id=entity_id, position=position, play_count=count)
        for position, (entity_id, count) in enumerate(ordered, start=1)
    ]
