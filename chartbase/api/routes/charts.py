"""
Chart API Routes

Endpoints for generating charts, browsing them and following chart runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from chartbase.services.chart_service import get_chart_service
from chartbase.services.chart_store import CHART_TYPES
from chartbase.services.errors import InvalidPeriodKey, SourceUnavailable
from chartbase.services.period_keys import PERIOD_TYPES, WEEKLY

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateAllRequest(BaseModel):
    chart_types: list[str] = Field(default_factory=lambda: list(CHART_TYPES))
    period_types: list[str] = Field(default_factory=lambda: list(PERIOD_TYPES))
    from_date: date | None = None
    to_date: date | None = None
    regenerate: bool = False


def _check_chart_type(chart_type: str) -> None:
    if chart_type not in CHART_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown chart type: {chart_type}")


def _check_period_type(period_type: str) -> None:
    if period_type not in PERIOD_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown period type: {period_type}")


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ----------------------------------------------------------------------
# periods


@router.get("/periods/{period_type}/by-date")
async def period_for_date(
    period_type: str,
    day: date = Query(..., alias="date", description="Date as YYYY-MM-DD"),
) -> dict[str, Any]:
    """Resolve the period containing a date (used for jump-to-date)."""
    _check_period_type(period_type)
    service = get_chart_service()
    try:
        period_key = service.key_for_date(period_type, day)
    except InvalidPeriodKey as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "period_type": period_type,
        "period_key": period_key,
        "label": service.codec.format_key(period_type, period_key),
    }


# ----------------------------------------------------------------------
# generation


@router.post("/generate/{period_type}/{period_key}")
async def generate_period(
    period_type: str,
    period_key: str,
    force: bool = Query(False, description="Regenerate finalized charts"),
) -> dict[str, Any]:
    """Generate the song and album charts of one period."""
    _check_period_type(period_type)
    service = get_chart_service()

    try:
        charts = await asyncio.to_thread(service.generate, period_type, period_key, force)
    except InvalidPeriodKey as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SourceUnavailable as e:
        logger.warning("Chart generation unavailable: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.exception("Failed to generate %s charts for %s", period_type, period_key)
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "period_type": period_type,
        "charts": {chart_type: chart.to_dict() for chart_type, chart in charts.items()},
    }


@router.post("/generate-all")
async def generate_all(payload: GenerateAllRequest) -> dict[str, Any]:
    """Start generating every missing period in the background."""
    service = get_chart_service()
    try:
        session_id = await asyncio.to_thread(
            service.start_bulk,
            payload.chart_types,
            payload.period_types,
            payload.from_date,
            payload.to_date,
            payload.regenerate,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Failed to start bulk chart generation")
        raise HTTPException(status_code=500, detail=str(e))
    return {"session_id": session_id}


@router.get("/generate-all/{session_id}")
async def generate_all_progress(session_id: str) -> dict[str, Any]:
    session = get_chart_service().poll_bulk(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session.to_dict()


@router.get("/generate-all/{session_id}/stream")
async def generate_all_stream(
    session_id: str,
    interval: float = Query(0.5, gt=0, le=10, description="Seconds between polls"),
):
    """
    Stream bulk generation progress using Server-Sent Events.

    Emits a ``progress`` event whenever the session changes and a final
    ``complete`` (or ``failed``) event when it stops running.
    """
    service = get_chart_service()
    if service.poll_bulk(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")

    async def event_generator():
        last: dict[str, Any] | None = None
        while True:
            session = service.poll_bulk(session_id)
            if session is None:
                yield _sse({"type": "error", "message": "Session expired"})
                break

            data = session.to_dict()
            if not session.is_running:
                kind = "failed" if session.status == "failed" else "complete"
                yield _sse({"type": kind, **data})
                break

            if data != last:
                yield _sse({"type": "progress", **data})
                last = data
            else:
                yield ": keep-alive\n\n"
            await asyncio.sleep(interval)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable buffering in nginx
        },
    )


@router.delete("/generate-all/{session_id}")
async def discard_session(session_id: str) -> dict[str, Any]:
    service = get_chart_service()
    if service.poll_bulk(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    if not service.discard_bulk(session_id):
        raise HTTPException(status_code=409, detail="Session is still running")
    return {"session_id": session_id, "discarded": True}


# ----------------------------------------------------------------------
# chart runs


@router.get("/{chart_type}/most-periods")
async def most_periods(
    chart_type: str,
    max_position: int = Query(1, ge=1, le=100, description="Count periods at or above this position"),
    period_type: str = Query(WEEKLY),
    year: int | None = Query(None, ge=1, le=9998),
    limit: int = Query(20, ge=1, le=200),
) -> dict[str, Any]:
    """Entities with the most periods spent at or above a position."""
    _check_chart_type(chart_type)
    _check_period_type(period_type)
    try:
        tallies = get_chart_service().most_periods_at_position(
            chart_type, max_position, period_type, year, limit
        )
    except Exception as e:
        logger.exception("Failed to compute most periods at position")
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "chart_type": chart_type,
        "period_type": period_type,
        "max_position": max_position,
        "year": year,
        "entries": [tally.to_dict() for tally in tallies],
    }


@router.get("/{chart_type}/entities/{entity_id}/run")
async def chart_run(
    chart_type: str,
    entity_id: str,
    period_type: str = Query(WEEKLY),
) -> dict[str, Any]:
    """Full chart run of an entity: every appearance plus peak statistics."""
    _check_chart_type(chart_type)
    _check_period_type(period_type)
    try:
        return get_chart_service().chart_run(entity_id, chart_type, period_type).to_dict()
    except Exception as e:
        logger.exception("Failed to load chart run for %s", entity_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{chart_type}/entities/{entity_id}/trend")
async def chart_trend(
    chart_type: str,
    entity_id: str,
    period_key: str = Query(..., description="Period to compare against its predecessor"),
    period_type: str = Query(WEEKLY),
) -> dict[str, Any]:
    _check_chart_type(chart_type)
    _check_period_type(period_type)
    trend = get_chart_service().trend(entity_id, period_key, chart_type, period_type)
    return {
        "entity_id": entity_id,
        "period_key": period_key,
        "trend": trend.to_dict() if trend is not None else None,
    }


# ----------------------------------------------------------------------
# charts


@router.get("/{chart_type}/weekly/{period_key}/navigation")
async def weekly_navigation(chart_type: str, period_key: str) -> dict[str, Any]:
    """Existing neighbouring weekly charts plus the calendar neighbours."""
    _check_chart_type(chart_type)
    service = get_chart_service()
    try:
        calendar_previous = service.codec.previous_key(WEEKLY, period_key)
        calendar_next = service.codec.next_key(WEEKLY, period_key)
        label = service.codec.format_key(WEEKLY, period_key)
    except InvalidPeriodKey as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "period_key": service.codec.normalize_key(WEEKLY, period_key),
        "label": label,
        "previous_period_key": service.previous_key(chart_type, period_key),
        "next_period_key": service.next_key(chart_type, period_key),
        "calendar_previous_key": calendar_previous,
        "calendar_next_key": calendar_next,
    }


@router.get("/{chart_type}/{period_type}/{period_key}/preview")
async def preview_chart(chart_type: str, period_type: str, period_key: str) -> dict[str, Any]:
    """Rank a period from the current plays without storing it."""
    _check_chart_type(chart_type)
    _check_period_type(period_type)
    service = get_chart_service()
    try:
        entries = await asyncio.to_thread(service.preview, chart_type, period_type, period_key)
    except InvalidPeriodKey as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SourceUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "chart_type": chart_type,
        "period_type": period_type,
        "period_key": service.codec.normalize_key(period_type, period_key),
        "label": service.codec.format_key(period_type, period_key),
        "entries": [
            {
                "entity_id": entry.entity_id,
                "position": entry.position,
                "play_count": entry.play_count,
            }
            for entry in entries
        ],
    }


@router.get("/{chart_type}/{period_type}/{period_key}")
async def get_chart(chart_type: str, period_type: str, period_key: str) -> dict[str, Any]:
    """A generated chart with movement, peak and periods-on-chart per row."""
    _check_chart_type(chart_type)
    _check_period_type(period_type)
    try:
        view = get_chart_service().chart_view(chart_type, period_type, period_key)
    except Exception as e:
        logger.exception("Failed to load %s %s chart %s", period_type, chart_type, period_key)
        raise HTTPException(status_code=500, detail=str(e))
    if view is None:
        raise HTTPException(
            status_code=404,
            detail=f"No {period_type} {chart_type} chart for {period_key}",
        )
    return view.to_dict()


@router.get("/{chart_type}/{period_type}")
async def list_charts(
    chart_type: str,
    period_type: str,
    finalized_only: bool = Query(False, description="Skip charts of periods still in progress"),
) -> dict[str, Any]:
    """Index of generated charts, newest first, with each chart's number one."""
    _check_chart_type(chart_type)
    _check_period_type(period_type)
    try:
        summaries = await asyncio.to_thread(
            get_chart_service().list_charts, chart_type, period_type, finalized_only
        )
    except SourceUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.exception("Failed to list %s %s charts", period_type, chart_type)
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "chart_type": chart_type,
        "period_type": period_type,
        "total": len(summaries),
        "charts": [summary.to_dict() for summary in summaries],
    }
