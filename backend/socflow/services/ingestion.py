import json
import logging
from typing import Any, Dict, List, Optional

import pydantic
from sqlalchemy.orm import Session

from socflow.core.errors import ValidationError
from socflow.models.incident import Incident
from socflow.schemas.analysis import SEVERITY_ORDER, Indicator, MitreTechnique
from socflow.schemas.incidents import AUTOMATED_SOURCES, IncidentDraft, IncidentSubmission
from socflow.services.ioc_extractor import (
    classify_indicator,
    extract_indicators,
    merge_indicators,
    normalize_value,
)
from socflow.services.mitre_catalog import mitre_catalog

logger = logging.getLogger(__name__)

_SOURCES = {"manual", "siem-webhook", "siem-api"}


def _clean(value: Optional[str]) -> str:
    return str(value or "").strip()


def _parse_indicator(raw: Any, index: int, errors: List[Dict[str, Any]]) -> Optional[Indicator]:
    field = f"iocs[{index}]"
    if isinstance(raw, str):
        ioc_type = classify_indicator(raw)
        if not ioc_type:
            errors.append({"field": field, "error": f"unrecognised indicator '{raw}'"})
            return None
        return Indicator(type=ioc_type, value=normalize_value(ioc_type, raw))

    if isinstance(raw, dict):
        value = _clean(raw.get("value"))
        declared = _clean(raw.get("type")).lower()
        detected = classify_indicator(value)
        if not value or not declared:
            errors.append({"field": field, "error": "indicator objects need 'type' and 'value'"})
            return None
        if detected != declared:
            errors.append({"field": field, "error": f"value '{value}' is not a valid {declared}"})
            return None
        return Indicator(type=detected, value=normalize_value(detected, value))

    errors.append({"field": field, "error": "indicator must be a string or {type, value} object"})
    return None


def _parse_technique(raw: Any, index: int, errors: List[Dict[str, Any]]) -> Optional[MitreTechnique]:
    field = f"mitreAttack[{index}]"
    technique_id = raw.get("technique_id") if isinstance(raw, dict) else raw
    if not isinstance(technique_id, str) or not mitre_catalog.is_technique_id(technique_id):
        errors.append({"field": field, "error": f"invalid MITRE technique id '{technique_id}'"})
        return None
    return mitre_catalog.technique(technique_id, confidence=100)


def normalize_submission(payload: Dict[str, Any]) -> IncidentDraft:
    """
    Validates a manual or SIEM submission and returns an unclassified draft.
    Raises ValidationError listing every problem found.
    """
    try:
        submission = IncidentSubmission.model_validate(payload or {})
    except pydantic.ValidationError as exc:
        raise ValidationError([
            {"field": ".".join(str(p) for p in e.get("loc", ())), "error": e.get("msg")}
            for e in exc.errors()
        ]) from exc

    errors: List[Dict[str, Any]] = []

    title = _clean(submission.title)
    if not title:
        errors.append({"field": "title", "error": "title is required"})

    log_data = _clean(submission.log_data)
    additional_logs = _clean(submission.additional_logs)
    if not log_data and not additional_logs:
        errors.append({"field": "logData", "error": "at least one log artifact is required"})

    source = _clean(submission.source).lower() or "manual"
    if source not in _SOURCES:
        errors.append({"field": "source", "error": f"unknown source '{submission.source}'"})

    siem_type = _clean(submission.siem_type).lower() or None
    if source in AUTOMATED_SOURCES and not siem_type:
        errors.append({"field": "siemType", "error": "automated submissions must name their SIEM"})

    severity = _clean(submission.severity).lower() or None
    if severity and severity not in SEVERITY_ORDER:
        errors.append({"field": "severity", "error": f"unknown severity '{submission.severity}'"})

    declared = [_parse_indicator(raw, i, errors) for i, raw in enumerate(submission.iocs)]
    techniques = [_parse_technique(raw, i, errors) for i, raw in enumerate(submission.mitre_attack)]

    if errors:
        logger.info("submission rejected", extra={"errors": json.dumps(errors)})
        raise ValidationError(errors)

    extracted = extract_indicators("\n".join([log_data, additional_logs]))
    unique_techniques = {t.technique_id: t for t in techniques if t}

    draft = IncidentDraft(
        title=title,
        system_context=_clean(submission.system_context),
        log_data=log_data,
        additional_logs=additional_logs,
        iocs=merge_indicators([i for i in declared if i], extracted),
        mitre_techniques=list(unique_techniques.values()),
        severity=severity,
        source=source,
        siem_type=siem_type if source in AUTOMATED_SOURCES else None,
        siem_integration_id=_clean(submission.siem_integration_id) or None,
        siem_incident_id=_clean(submission.siem_incident_id) or None,
    )
    return draft


def persist_draft(db: Session, draft: IncidentDraft) -> Incident:
    row = Incident(
        title=draft.title,
        system_context=draft.system_context or None,
        log_data=draft.log_data,
        additional_logs=draft.additional_logs or None,
        severity=draft.severity,
        status="open",
        classification="unset",
        needs_review=False,
        confidence=None,
        mitre_techniques_json=json.dumps([t.model_dump() for t in draft.mitre_techniques]),
        iocs_json=json.dumps([i.model_dump() for i in draft.iocs]),
        source=draft.source,
        siem_type=draft.siem_type,
        siem_integration_id=draft.siem_integration_id,
        siem_incident_id=draft.siem_incident_id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(
        "incident ingested",
        extra={"incident_id": row.id, "source": row.source, "ioc_count": len(draft.iocs)}
    )
    return row


def draft_from_row(row: Incident) -> IncidentDraft:
    iocs = json.loads(row.iocs_json) if row.iocs_json else []
    techniques = json.loads(row.mitre_techniques_json) if row.mitre_techniques_json else []
    return IncidentDraft(
        id=row.id,
        title=row.title,
        system_context=row.system_context or "",
        log_data=row.log_data or "",
        additional_logs=row.additional_logs or "",
        iocs=[Indicator(**i) for i in iocs],
        mitre_techniques=[MitreTechnique(**t) for t in techniques],
        severity=row.severity,
        source=row.source,
        siem_type=row.siem_type,
        siem_integration_id=row.siem_integration_id,
        siem_incident_id=row.siem_incident_id,
    )
