from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_METADATA_DIR = Path(
    os.environ.get("CHARTBASE_METADATA_DIR", REPO_ROOT / ".metadata")
)
SETTINGS_PATH = DEFAULT_METADATA_DIR / "settings.json"


def _default_settings() -> dict[str, Any]:
    return {
        "charts": {
            # Entries kept per chart; null keeps every entity with plays.
            "limits": {
                "weekly": {"song": 20, "album": 10},
                "monthly": {"song": 30, "album": 10},
                "seasonal": {"song": 30, "album": 10},
                "yearly": {"song": 30, "album": 10},
            },
            # "entity_id" or "name"; name falls back to entity id for unknown ids.
            "tie_break": "entity_id",
        },
        "bulk": {
            "workers": 2,
            "session_ttl_seconds": 3600,
        },
    }


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _deep_merge(base[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(path: Path | None = None) -> dict[str, Any]:
    defaults = _default_settings()
    path = path or SETTINGS_PATH
    if not path.exists():
        return defaults
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return defaults
    if not isinstance(data, dict):
        return defaults
    return _deep_merge(defaults, data)


def chart_limit(
    period_type: str,
    chart_type: str,
    settings: dict[str, Any] | None = None,
) -> int | None:
    """Configured chart size for a granularity and chart type (None = uncapped)."""
    settings = settings or load_settings()
    limits = settings.get("charts", {}).get("limits", {})
    if not isinstance(limits, dict):
        return None
    by_type = limits.get(period_type)
    if not isinstance(by_type, dict):
        return None
    value = by_type.get(chart_type)
    return int(value) if value is not None else None


def bulk_settings(settings: dict[str, Any] | None = None) -> dict[str, Any]:
    settings = settings or load_settings()
    bulk = settings.get("bulk") if isinstance(settings, dict) else {}
    if not isinstance(bulk, dict):
        bulk = {}
    return {
        "workers": max(1, int(bulk.get("workers") or 1)),
        "session_ttl_seconds": float(bulk.get("session_ttl_seconds") or 3600),
    }
