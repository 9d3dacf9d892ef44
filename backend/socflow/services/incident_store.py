import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from socflow.core.config import settings
from socflow.core.errors import IncidentNotFound, ValidationError
from socflow.models.incident import Incident, IncidentComment
from socflow.models.siem import SiemResponse
from socflow.schemas.analysis import Indicator, MitreTechnique
from socflow.schemas.incidents import (
    CloseRequest,
    CommentCreate,
    CommentRecord,
    IncidentDraft,
    IncidentRecord,
    OverrideRequest,
)
from socflow.schemas.siem import SiemResponseRecord

logger = logging.getLogger(__name__)


def _parse_json(value: Optional[str], fallback: Any) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except ValueError:
        return fallback


def _iso(value: Optional[datetime]) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def get_incident(db: Session, incident_id: str) -> Incident:
    incident = db.get(Incident, incident_id)
    if incident is None:
        raise IncidentNotFound(incident_id)
    return incident


def serialize_incident(incident: Incident) -> IncidentRecord:
    return IncidentRecord(
        id=incident.id,
        created_at=_iso(incident.created_at),
        updated_at=_iso(incident.updated_at),
        title=incident.title,
        system_context=incident.system_context,
        log_data=incident.log_data or "",
        additional_logs=incident.additional_logs,
        severity=incident.severity,
        status=incident.status,
        classification=incident.classification,
        needs_review=bool(incident.needs_review),
        confidence=incident.confidence,
        analysis_confidence=incident.analysis_confidence,
        mitre_techniques=[MitreTechnique(**t) for t in _parse_json(incident.mitre_techniques_json, [])],
        iocs=[Indicator(**i) for i in _parse_json(incident.iocs_json, [])],
        source=incident.source,
        siem_type=incident.siem_type,
        siem_integration_id=incident.siem_integration_id,
        siem_incident_id=incident.siem_incident_id,
        analysis_state=incident.analysis_state,
        analysis=_parse_json(incident.analysis_json, {}),
        analyzed_at=_iso(incident.analyzed_at),
        comments=[
            CommentRecord(id=c.id, created_at=_iso(c.created_at), author=c.author, kind=c.kind, body=c.body)
            for c in incident.comments
        ],
    )


def serialize_siem_response(record: SiemResponse) -> SiemResponseRecord:
    return SiemResponseRecord(
        id=record.id,
        incident_id=record.incident_id,
        siem_type=record.siem_type,
        endpoint_url=record.endpoint_url,
        status=record.status,
        final=bool(record.final),
        http_status=record.http_status,
        error_message=record.error_message,
        payload=_parse_json(record.payload_json, None),
        response_body=record.response_body,
        sent_at=_iso(record.sent_at),
        retried_count=record.retried_count or 0,
        next_attempt_at=_iso(record.next_attempt_at),
        created_at=_iso(record.created_at),
    )


def list_incidents(
    db: Session,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    classification: Optional[str] = None,
    source: Optional[str] = None,
    needs_review: Optional[bool] = None,
    limit: Optional[int] = 100,
) -> List[Incident]:
    query = db.query(Incident)
    if status:
        query = query.filter(Incident.status == status)
    if severity:
        query = query.filter(Incident.severity == severity)
    if classification:
        query = query.filter(Incident.classification == classification)
    if source:
        query = query.filter(Incident.source == source)
    if needs_review is not None:
        query = query.filter(Incident.needs_review == needs_review)
    query = query.order_by(Incident.created_at.desc(), Incident.id.asc())
    if limit:
        query = query.limit(limit)
    return query.all()


def list_siem_responses(
    db: Session,
    incident_id: Optional[str] = None,
    status: Optional[str] = None,
    final: Optional[bool] = None,
    limit: int = 100,
) -> List[SiemResponse]:
    query = db.query(SiemResponse)
    if incident_id:
        query = query.filter(SiemResponse.incident_id == incident_id)
    if status:
        query = query.filter(SiemResponse.status == status)
    if final is not None:
        query = query.filter(SiemResponse.final == final)
    return query.order_by(SiemResponse.created_at.desc()).limit(limit).all()


def add_comment(db: Session, incident_id: str, data: CommentCreate, kind: str = "analyst") -> IncidentComment:
    incident = get_incident(db, incident_id)
    body = (data.body or "").strip()
    if not body:
        raise ValidationError([{"field": "body", "error": "comment body is required"}])
    comment = IncidentComment(incident_id=incident.id, author=data.author, kind=kind, body=body)
    db.add(comment)
    db.commit()
    db.refresh(comment)
    return comment


def override_classification(db: Session, incident_id: str, data: OverrideRequest) -> Incident:
    """Analyst verdict; always clears needs-review and is recorded as a comment."""
    incident = get_incident(db, incident_id)
    comment = (data.comment or "").strip()
    if settings.REQUIRE_OVERRIDE_COMMENT and not comment:
        raise ValidationError([{"field": "comment", "error": "a comment is required to override a classification"}])

    previous = incident.classification
    incident.classification = data.classification
    incident.needs_review = False
    if data.severity:
        incident.severity = data.severity
    elif not incident.severity:
        incident.severity = "medium"
    incident.confidence = data.confidence if data.confidence is not None else 100

    body = f"Classification overridden: {previous} -> {data.classification}."
    if comment:
        body += f" {comment}"
    db.add(IncidentComment(incident_id=incident.id, author=data.author, kind="analyst", body=body))
    db.commit()
    db.refresh(incident)
    logger.info(
        "classification overridden",
        extra={"incident_id": incident.id, "author": data.author, "from": previous, "to": data.classification}
    )
    return incident


def close_incident(db: Session, incident_id: str, data: CloseRequest) -> Incident:
    incident = get_incident(db, incident_id)
    incident.status = "closed"
    body = "Incident closed."
    if data.comment and data.comment.strip():
        body += f" {data.comment.strip()}"
    db.add(IncidentComment(incident_id=incident.id, author=data.author, kind="analyst", body=body))
    db.commit()
    db.refresh(incident)
    logger.info("incident closed", extra={"incident_id": incident.id, "author": data.author})
    return incident


def similar_history(db: Session, draft: IncidentDraft, limit: int = 200) -> Dict[str, int]:
    """
    Counts earlier classified incidents sharing an indicator or the exact title.
    Used by the strategic analyst as a historical prior.
    """
    keys = {i.key for i in draft.iocs}
    rows = (
        db.query(Incident)
        .filter(Incident.id != (draft.id or ""))
        .filter(Incident.classification.in_(["true-positive", "false-positive"]))
        .order_by(Incident.created_at.desc())
        .limit(limit)
        .all()
    )
    similar = tp = fp = 0
    for row in rows:
        row_keys = {Indicator(**i).key for i in _parse_json(row.iocs_json, [])}
        if row.title == draft.title or keys & row_keys:
            similar += 1
            if row.classification == "true-positive":
                tp += 1
            else:
                fp += 1
    return {"similar": similar, "similar_true_positive": tp, "similar_false_positive": fp}
