"""API routes for the advanced query / threat-hunting tool."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from threatquery.db.models import User
from threatquery.services.auth import get_current_user
from threatquery.services.query_diagnostics import ErrorKind
from threatquery.services.query_engine import (
    QueryEngine,
    QueryOutcome,
    SavedQueryNotFound,
    get_query_engine,
)
from threatquery.services.query_history import MAX_HISTORY_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queries", tags=["queries"])


# ── Models ────────────────────────────────────────────────────────────


class RunQueryRequest(BaseModel):
    query: str
    query_type: str | None = Field(None, description="kql | sql | custom")


class SaveQueryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256, pattern=r"\S")
    query: str = Field(..., min_length=1, pattern=r"\S")
    query_type: str | None = Field(None, description="kql | sql | custom")


def _respond(outcome: QueryOutcome) -> dict:
    if outcome.ok:
        return outcome.to_dict()
    code = (
        status.HTTP_504_GATEWAY_TIMEOUT
        if outcome.kind == ErrorKind.TIMEOUT.value
        else status.HTTP_400_BAD_REQUEST
    )
    raise HTTPException(status_code=code, detail=outcome.to_dict())


# ── Routes ────────────────────────────────────────────────────────────


@router.post("/run", summary="Run an advanced query")
async def run_query(
    body: RunQueryRequest,
    user: User = Depends(get_current_user),
    engine: QueryEngine = Depends(get_query_engine),
):
    outcome = await engine.run_query(user.id, body.query, body.query_type)
    return _respond(outcome)


@router.post("/save", status_code=status.HTTP_201_CREATED, summary="Save a query for reuse")
async def save_query(
    body: SaveQueryRequest,
    user: User = Depends(get_current_user),
    engine: QueryEngine = Depends(get_query_engine),
):
    saved_id = await engine.save_query(user.id, body.name, body.query, body.query_type)
    return {"id": saved_id, "name": body.name.strip()}


@router.get("/history", summary="Recent query runs")
async def list_history(
    limit: int | None = Query(None, ge=1, le=MAX_HISTORY_LIMIT),
    user: User = Depends(get_current_user),
    engine: QueryEngine = Depends(get_query_engine),
):
    entries = await engine.list_history(user.id, limit)
    return {"history": [e.to_dict() for e in entries], "total": len(entries)}


@router.get("/saved", summary="Saved queries")
async def list_saved(
    user: User = Depends(get_current_user),
    engine: QueryEngine = Depends(get_query_engine),
):
    entries = await engine.list_saved(user.id)
    return {"saved": [e.to_dict() for e in entries], "total": len(entries)}


@router.post("/saved/{saved_id}/run", summary="Re-run a saved query")
async def rerun_saved(
    saved_id: str,
    user: User = Depends(get_current_user),
    engine: QueryEngine = Depends(get_query_engine),
):
    try:
        outcome = await engine.rerun_saved(user.id, saved_id)
    except SavedQueryNotFound:
        raise HTTPException(status_code=404, detail="Saved query not found")
    return _respond(outcome)


@router.get("/schema", summary="Queryable entities and columns")
async def get_schema(engine: QueryEngine = Depends(get_query_engine)):
    return {
        "entities": engine.catalog.describe(),
        "default_entity": engine.catalog.default_entity.name,
    }


@router.delete("/{entry_id}", summary="Delete a history entry or saved query")
async def delete_entry(
    entry_id: str,
    user: User = Depends(get_current_user),
    engine: QueryEngine = Depends(get_query_engine),
):
    if not await engine.delete_entry(user.id, entry_id):
        raise HTTPException(status_code=404, detail="Query not found")
    return {"status": "deleted"}
