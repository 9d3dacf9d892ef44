import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from socflow.core.config import settings
from socflow.core.errors import IncidentNotFound
from socflow.models.incident import Incident, IncidentComment
from socflow.schemas.analysis import OrchestrationResult, SynthesisResult, ThreatIntelReport

logger = logging.getLogger(__name__)


class ClassificationEngine:
    """
    The only automated writer of an incident's classification fields.
    Below-threshold, inconclusive or degraded verdicts become needs-review.
    """

    def __init__(self, threshold: Optional[int] = None):
        self.threshold = threshold if threshold is not None else settings.CONFIDENCE_THRESHOLD

    def decide(self, result: SynthesisResult) -> bool:
        """True when the verdict may be committed automatically."""
        return (
            result.state == "complete"
            and result.classification in ("true-positive", "false-positive")
            and result.confidence >= self.threshold
        )

    def _comment(self, result: SynthesisResult, orchestration: OrchestrationResult, accepted: bool) -> str:
        if accepted:
            head = f"Auto-classified {result.classification} ({result.severity}, confidence {result.confidence})."
        else:
            head = (
                f"Flagged for analyst review: synthesis {result.state}, verdict {result.classification} "
                f"at confidence {result.confidence} (threshold {self.threshold})."
            )
        contributing = ", ".join(f.agent for f in orchestration.findings) or "none"
        failed = ", ".join(f"{f.agent} ({f.reason})" for f in orchestration.failures) or "none"
        return f"{head} {result.explanation}\nContributing agents: {contributing}\nFailed agents: {failed}"

    def commit(
        self,
        session: Session,
        incident_id: str,
        result: SynthesisResult,
        orchestration: OrchestrationResult,
        threat_report: Optional[ThreatIntelReport] = None,
    ) -> Incident:
        # no awaits in here: a cancelled pipeline either commits all of this or none of it
        incident = session.get(Incident, incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)

        accepted = self.decide(result)
        if accepted:
            incident.classification = result.classification
            incident.severity = result.severity
            incident.confidence = result.confidence
            incident.needs_review = False
        else:
            incident.classification = "needs-review"
            incident.needs_review = True
            incident.confidence = None
            incident.severity = incident.severity or "medium"

        now = datetime.now(timezone.utc)
        incident.analysis_confidence = result.confidence
        incident.analysis_state = result.state
        incident.mitre_techniques_json = json.dumps([t.model_dump() for t in result.mitre_techniques])
        incident.analysis_json = json.dumps({
            "synthesis": result.model_dump(mode="json"),
            "orchestration": orchestration.model_dump(mode="json"),
            "threat_intel": threat_report.model_dump(mode="json") if threat_report else None,
        })
        incident.analyzed_at = now
        if incident.status == "open":
            incident.status = "in-progress"

        session.add(IncidentComment(
            incident_id=incident.id,
            author="system",
            kind="system",
            body=self._comment(result, orchestration, accepted),
        ))
        session.commit()
        session.refresh(incident)

        logger.info(
            "classification committed",
            extra={
                "incident_id": incident.id,
                "classification": incident.classification,
                "severity": incident.severity,
                "confidence": incident.confidence,
                "analysis_state": result.state,
            }
        )
        return incident
