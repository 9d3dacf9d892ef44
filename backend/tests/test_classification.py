"""
Tests for the classification and confidence engine.
"""

import json

import pytest

from socflow.core.errors import IncidentNotFound
from socflow.models.incident import Incident
from socflow.schemas.analysis import (
    AgentFailureRecord,
    AgentFinding,
    MitreTechnique,
    OrchestrationResult,
    SynthesisResult,
)
from socflow.services.classification import ClassificationEngine
from socflow.services.ingestion import normalize_submission, persist_draft

from conftest import powershell_submission


@pytest.fixture
def incident_id(session_factory) -> str:
    db = session_factory()
    try:
        return persist_draft(db, normalize_submission(powershell_submission())).id
    finally:
        db.close()


@pytest.fixture
def orchestration() -> OrchestrationResult:
    return OrchestrationResult(
        registered=["pattern-recognition", "network-analysis"],
        findings=[AgentFinding(agent="pattern-recognition", vote="true-positive", confidence=90, rationale="r")],
        failures=[AgentFailureRecord(agent="network-analysis", reason="timed out after 20s", timed_out=True)],
    )


def result(**overrides) -> SynthesisResult:
    data = {
        "state": "complete",
        "classification": "true-positive",
        "severity": "high",
        "confidence": 85,
        "explanation": "Analysts agree on true-positive",
        "recommendations": ["Isolate the affected host"],
        "mitre_techniques": [MitreTechnique(technique_id="T1059.001", name="PowerShell", tactics=["execution"])],
        "contributing_agents": ["pattern-recognition"],
        "failed_agents": ["network-analysis"],
    }
    data.update(overrides)
    return SynthesisResult(**data)


class TestClassificationEngine:
    """Tests for committing synthesis results."""

    def test_confident_result_committed(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            row = ClassificationEngine(threshold=70).commit(db, incident_id, result(), orchestration)

            assert row.classification == "true-positive"
            assert row.severity == "high"
            assert row.confidence == 85
            assert row.analysis_confidence == 85
            assert row.needs_review is False
            assert row.analyzed_at is not None
            assert json.loads(row.mitre_techniques_json)[0]["technique_id"] == "T1059.001"
        finally:
            db.close()

    def test_threshold_is_inclusive(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            row = ClassificationEngine(threshold=70).commit(db, incident_id, result(confidence=70), orchestration)
            assert row.classification == "true-positive"
        finally:
            db.close()

    def test_low_confidence_needs_review(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            row = ClassificationEngine(threshold=70).commit(db, incident_id, result(confidence=69), orchestration)

            assert row.classification == "needs-review"
            assert row.needs_review is True
            assert row.confidence is None
            assert row.analysis_confidence == 69
            # no prior severity
            assert row.severity == "medium"
        finally:
            db.close()

    def test_needs_review_keeps_prior_severity(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            db.get(Incident, incident_id).severity = "critical"
            db.commit()
            row = ClassificationEngine(threshold=70).commit(
                db, incident_id, result(state="degraded", confidence=95), orchestration
            )

            assert row.classification == "needs-review"
            assert row.severity == "critical"
            assert row.analysis_state == "degraded"
        finally:
            db.close()

    def test_inconclusive_needs_review(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            row = ClassificationEngine(threshold=70).commit(
                db, incident_id, result(classification="inconclusive", confidence=90), orchestration
            )
            assert row.classification == "needs-review"
        finally:
            db.close()

    def test_system_comment_names_agents(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            row = ClassificationEngine(threshold=70).commit(db, incident_id, result(), orchestration)

            assert len(row.comments) == 1
            comment = row.comments[0]
            assert comment.kind == "system"
            assert "pattern-recognition" in comment.body
            assert "network-analysis (timed out after 20s)" in comment.body
        finally:
            db.close()

    def test_analysis_document_stored(self, session_factory, incident_id, orchestration):
        db = session_factory()
        try:
            row = ClassificationEngine(threshold=70).commit(db, incident_id, result(), orchestration)
            analysis = json.loads(row.analysis_json)

            assert analysis["synthesis"]["classification"] == "true-positive"
            assert analysis["orchestration"]["failures"][0]["agent"] == "network-analysis"
        finally:
            db.close()

    def test_unknown_incident(self, session_factory, orchestration):
        db = session_factory()
        try:
            with pytest.raises(IncidentNotFound):
                ClassificationEngine().commit(db, "missing", result(), orchestration)
        finally:
            db.close()
