from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from socflow.core.errors import ConcurrencyConflict, IncidentNotFound, ValidationError
from socflow.database.db import get_db
from socflow.routes.deps import get_pipeline
from socflow.schemas.incidents import (
    CloseRequest,
    CommentCreate,
    CommentRecord,
    IncidentRecord,
    OverrideRequest,
)
from socflow.schemas.siem import SiemResponseRecord
from socflow.services import incident_store
from socflow.services.pipeline import IncidentPipeline

router = APIRouter()


def _not_found(exc: IncidentNotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


@router.post("/incidents", response_model=IncidentRecord)
async def submit_incident(
    payload: Dict[str, Any] = Body(...),
    pipeline: IncidentPipeline = Depends(get_pipeline),
):
    """
    Manual or API submission. Runs the full analysis and returns the classified incident.
    """
    try:
        return await pipeline.submit(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors)
    except ConcurrencyConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("/incidents", response_model=List[IncidentRecord])
def list_incidents(
    status: Optional[str] = None,
    severity: Optional[str] = None,
    classification: Optional[str] = None,
    source: Optional[str] = None,
    needs_review: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    rows = incident_store.list_incidents(
        db,
        status=status,
        severity=severity,
        classification=classification,
        source=source,
        needs_review=needs_review,
        limit=limit,
    )
    return [incident_store.serialize_incident(r) for r in rows]


@router.get("/incidents/{incident_id}", response_model=IncidentRecord)
def get_incident(incident_id: str, db: Session = Depends(get_db)):
    try:
        return incident_store.serialize_incident(incident_store.get_incident(db, incident_id))
    except IncidentNotFound as exc:
        raise _not_found(exc)


@router.post("/incidents/{incident_id}/analyze", response_model=IncidentRecord)
async def analyze_incident(incident_id: str, pipeline: IncidentPipeline = Depends(get_pipeline)):
    """
    Re-runs the analysis pipeline. 409 while another analysis of the same incident is active.
    """
    try:
        return await pipeline.analyze(incident_id)
    except IncidentNotFound as exc:
        raise _not_found(exc)
    except ConcurrencyConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/incidents/{incident_id}/cancel")
def cancel_analysis(
    incident_id: str,
    db: Session = Depends(get_db),
    pipeline: IncidentPipeline = Depends(get_pipeline),
):
    try:
        incident_store.get_incident(db, incident_id)
    except IncidentNotFound as exc:
        raise _not_found(exc)
    return {"incident_id": incident_id, "cancelled": pipeline.cancel(incident_id)}


@router.post("/incidents/{incident_id}/comments", response_model=CommentRecord)
def add_comment(incident_id: str, data: CommentCreate, db: Session = Depends(get_db)):
    try:
        comment = incident_store.add_comment(db, incident_id, data)
    except IncidentNotFound as exc:
        raise _not_found(exc)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors)
    return CommentRecord(
        id=comment.id,
        created_at=comment.created_at.isoformat() if comment.created_at else None,
        author=comment.author,
        kind=comment.kind,
        body=comment.body,
    )


@router.post("/incidents/{incident_id}/override", response_model=IncidentRecord)
def override_incident(incident_id: str, data: OverrideRequest, db: Session = Depends(get_db)):
    """
    Analyst override of the automated verdict. Clears the needs-review flag.
    """
    try:
        row = incident_store.override_classification(db, incident_id, data)
    except IncidentNotFound as exc:
        raise _not_found(exc)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors)
    return incident_store.serialize_incident(row)


@router.post("/incidents/{incident_id}/close", response_model=IncidentRecord)
def close_incident(incident_id: str, data: CloseRequest, db: Session = Depends(get_db)):
    try:
        row = incident_store.close_incident(db, incident_id, data)
    except IncidentNotFound as exc:
        raise _not_found(exc)
    return incident_store.serialize_incident(row)


@router.get("/incidents/{incident_id}/siem-responses", response_model=List[SiemResponseRecord])
def incident_siem_responses(incident_id: str, db: Session = Depends(get_db)):
    try:
        incident_store.get_incident(db, incident_id)
    except IncidentNotFound as exc:
        raise _not_found(exc)
    rows = incident_store.list_siem_responses(db, incident_id=incident_id)
    return [incident_store.serialize_siem_response(r) for r in rows]
