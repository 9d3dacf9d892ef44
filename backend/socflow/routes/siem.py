from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from socflow.core.errors import ValidationError
from socflow.database.db import get_db
from socflow.routes.deps import get_pipeline
from socflow.schemas.incidents import WebhookAccepted
from socflow.schemas.siem import SiemEndpointRecord, SiemEndpointUpsert, SiemResponseRecord
from socflow.services import incident_store
from socflow.services.pipeline import IncidentPipeline

router = APIRouter()


def _endpoint_record(row) -> SiemEndpointRecord:
    return SiemEndpointRecord(
        siem_type=row.siem_type,
        endpoint_url=row.endpoint_url,
        enabled=bool(row.enabled),
        has_auth_token=bool(row.auth_token),
    )


@router.post("/siem/webhook/{siem_type}", response_model=WebhookAccepted, status_code=202)
async def siem_webhook(
    siem_type: str,
    payload: Dict[str, Any] = Body(...),
    pipeline: IncidentPipeline = Depends(get_pipeline),
):
    """
    SIEM webhook intake. The incident is stored immediately and analysed in the background;
    the result is delivered back to the SIEM's registered endpoint.
    """
    payload = dict(payload)
    payload["source"] = "siem-webhook"
    payload["siemType"] = siem_type
    try:
        incident_id = pipeline.ingest(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors)
    pipeline.schedule(incident_id)
    return WebhookAccepted(incident_id=incident_id)


@router.get("/siem/responses", response_model=List[SiemResponseRecord])
def list_siem_responses(
    status: Optional[str] = None,
    final: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    rows = incident_store.list_siem_responses(db, status=status, final=final, limit=limit)
    return [incident_store.serialize_siem_response(r) for r in rows]


@router.get("/siem/endpoints", response_model=List[SiemEndpointRecord])
def list_siem_endpoints(db: Session = Depends(get_db), pipeline: IncidentPipeline = Depends(get_pipeline)):
    return [_endpoint_record(r) for r in pipeline.dispatcher.list_endpoints(db)]


@router.put("/siem/endpoints/{siem_type}", response_model=SiemEndpointRecord)
def put_siem_endpoint(
    siem_type: str,
    data: SiemEndpointUpsert,
    db: Session = Depends(get_db),
    pipeline: IncidentPipeline = Depends(get_pipeline),
):
    if not data.endpoint_url.startswith(("http://", "https://")):
        raise HTTPException(status_code=422, detail="endpoint_url must be an http(s) URL")
    return _endpoint_record(pipeline.dispatcher.upsert_endpoint(db, siem_type, data))
