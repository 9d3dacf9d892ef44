from typing import Any, Dict, List, Optional


class SocflowError(Exception):
    """Base class for every error raised by the analysis core."""


class ValidationError(SocflowError):
    """
    Malformed or incomplete incident submission.
    Raised synchronously at ingestion; the submission never enters the pipeline.
    """

    def __init__(self, errors: List[Dict[str, Any]]):
        self.errors = errors
        fields = ", ".join(str(e.get("field")) for e in errors) or "submission"
        super().__init__(f"invalid incident submission: {fields}")


class IncidentNotFound(SocflowError):
    def __init__(self, incident_id: str):
        self.incident_id = incident_id
        super().__init__(f"incident {incident_id} not found")


class AgentFailure(SocflowError):
    def __init__(self, agent: str, reason: str):
        self.agent = agent
        self.reason = reason
        super().__init__(f"agent {agent} failed: {reason}")


class AgentTimeoutError(AgentFailure):
    def __init__(self, agent: str, timeout: float):
        self.timeout = timeout
        super().__init__(agent, f"timed out after {timeout}s")


class SynthesisPhaseFailure(SocflowError):
    def __init__(self, phase: str, reason: str):
        self.phase = phase
        self.reason = reason
        super().__init__(f"synthesis phase {phase} failed: {reason}")


class ThreatIntelUnavailable(SocflowError):
    def __init__(self, indicator: str, reason: str, rate_limited: bool = False):
        self.indicator = indicator
        self.reason = reason
        self.rate_limited = rate_limited
        super().__init__(f"threat intel unavailable for {indicator}: {reason}")


class SiemDeliveryError(SocflowError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class InvalidDeliveryTransition(SocflowError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"illegal SIEM delivery transition {current} -> {target}")


class ConcurrencyConflict(SocflowError):
    """A second analysis was requested for an incident whose pipeline is still running."""

    def __init__(self, incident_id: str):
        self.incident_id = incident_id
        super().__init__(f"analysis already in progress for incident {incident_id}")
