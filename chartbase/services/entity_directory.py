"""
Entity Directory

Lookups against the song/album catalogue. The chart engine only uses it to
check that charted ids exist and to resolve display names; it never changes
entities.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

import psycopg
from psycopg_pool import PoolTimeout

from chartbase.services.errors import SourceUnavailable
from chartbase.services.play_log import ALBUM, ENTITY_CLASSES, SONG

logger = logging.getLogger(__name__)

_NAMES_SQL = {
    SONG: "SELECT sha_id, title FROM metadata.songs WHERE sha_id = ANY(%s)",
    ALBUM: "SELECT album_id, title FROM metadata.albums WHERE album_id = ANY(%s)",
}


class EntityDirectory:
    """Interface of the entity catalogue collaborator."""

    def names(self, entity_class: str, entity_ids: Iterable[str]) -> dict[str, str | None]:
        """Map known ids to their display name; unknown ids are omitted."""
        raise NotImplementedError

    def unknown_ids(self, entity_class: str, entity_ids: Iterable[str]) -> set[str]:
        ids = set(entity_ids)
        if not ids:
            return set()
        return ids - set(self.names(entity_class, ids))


class PostgresEntityDirectory(EntityDirectory):
    """Directory backed by ``metadata.songs`` and ``metadata.albums``."""

    def __init__(self, connection_factory: Callable | None = None) -> None:
        if connection_factory is None:
            from chartbase.db.connection import get_connection

            connection_factory = get_connection
        self._connection_factory = connection_factory

    def names(self, entity_class: str, entity_ids: Iterable[str]) -> dict[str, str | None]:
        if entity_class not in ENTITY_CLASSES:
            raise ValueError(f"Unknown entity class: {entity_class!r}")
        ids = list(set(entity_ids))
        if not ids:
            return {}
        try:
            with self._connection_factory() as conn:
                with conn.cursor() as cur:
                    cur.execute(_NAMES_SQL[entity_class], (ids,))
                    return {str(row[0]): row[1] for row in cur.fetchall()}
        except (psycopg.OperationalError, PoolTimeout) as exc:
            logger.warning("Entity directory lookup failed: %s", exc)
            raise SourceUnavailable(f"Entity directory unavailable: {exc}") from exc


class MemoryEntityDirectory(EntityDirectory):
    """In-memory catalogue used by tests and offline runs."""

    def __init__(self, entities: dict[str, dict[str, str | None]] | None = None) -> None:
        self._entities: dict[str, dict[str, str | None]] = {cls: {} for cls in ENTITY_CLASSES}
        self._lock = threading.Lock()
        for entity_class, names in (entities or {}).items():
            for entity_id, name in names.items():
                self.add(entity_class, entity_id, name)

    def add(self, entity_class: str, entity_id: str, name: str | None = None) -> None:
        if entity_class not in ENTITY_CLASSES:
            raise ValueError(f"Unknown entity class: {entity_class!r}")
        with self._lock:
            self._entities[entity_class][str(entity_id)] = name

    def names(self, entity_class: str, entity_ids: Iterable[str]) -> dict[str, str | None]:
        with self._lock:
            known = self._entities.get(entity_class, {})
            return {entity_id: known[entity_id] for entity_id in entity_ids if entity_id in known}
