from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SCHEMA_VERSION = 1

IndicatorType = Literal["ip", "domain", "url", "hash", "cve"]
Severity = Literal["critical", "high", "medium", "low", "informational"]
Vote = Literal["true-positive", "false-positive", "inconclusive"]
ThreatLevel = Severity

SEVERITY_ORDER = ["informational", "low", "medium", "high", "critical"]


def severity_rank(value: Optional[str]) -> int:
    try:
        return SEVERITY_ORDER.index(str(value or "").lower())
    except ValueError:
        return -1


def max_severity(*values: Optional[str]) -> Optional[str]:
    ranked = [v for v in values if severity_rank(v) >= 0]
    if not ranked:
        return None
    return max(ranked, key=severity_rank)


class Indicator(BaseModel):
    schema_version: int = SCHEMA_VERSION
    type: IndicatorType
    value: str

    @property
    def key(self) -> str:
        return f"{self.type}:{self.value.lower()}"


class MitreTechnique(BaseModel):
    schema_version: int = SCHEMA_VERSION
    technique_id: str
    name: str = "Unknown Technique"
    tactics: List[str] = Field(default_factory=list)
    confidence: int = 0


class ThreatIndicator(BaseModel):
    type: IndicatorType
    value: str
    status: Literal["ok", "unknown"] = "ok"
    malicious: Optional[bool] = None
    reputation: Optional[int] = None
    threat_score: int = 0
    pulse_count: int = 0
    tags: List[str] = Field(default_factory=list)
    country: Optional[str] = None
    organization: Optional[str] = None
    source: str = "unknown"
    error: Optional[str] = None


class ThreatIntelReport(BaseModel):
    schema_version: int = SCHEMA_VERSION
    indicators: List[ThreatIndicator] = Field(default_factory=list)
    risk_score: int = 0
    threat_level: ThreatLevel = "informational"
    malicious_count: int = 0
    unknown_count: int = 0
    summary: str = ""
    recommendations: List[str] = Field(default_factory=list)


class AgentFinding(BaseModel):
    agent: str
    vote: Vote
    confidence: int = Field(ge=0, le=100)
    rationale: str
    evidence_kind: Literal["technical", "behavioral"] = "technical"
    severity_hint: Optional[Severity] = None
    mitre_techniques: List[MitreTechnique] = Field(default_factory=list)
    key_findings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class AgentFailureRecord(BaseModel):
    agent: str
    reason: str
    timed_out: bool = False


class OrchestrationResult(BaseModel):
    registered: List[str] = Field(default_factory=list)
    findings: List[AgentFinding] = Field(default_factory=list)
    failures: List[AgentFailureRecord] = Field(default_factory=list)

    @property
    def no_findings(self) -> bool:
        return not self.findings

    @property
    def coverage(self) -> float:
        if not self.registered:
            return 0.0
        return len(self.findings) / len(self.registered)


class PhaseOutput(BaseModel):
    phase: str
    classification: Vote
    severity: Severity
    confidence: int = Field(ge=0, le=100)
    explanation: str
    recommendations: List[str] = Field(default_factory=list)


class PhaseRecord(BaseModel):
    state: str
    attempt: int = 1
    at: datetime
    error: Optional[str] = None


class SynthesisResult(BaseModel):
    state: Literal["complete", "degraded"]
    classification: Vote
    severity: Severity
    confidence: int = Field(ge=0, le=100)
    explanation: str
    recommendations: List[str] = Field(default_factory=list)
    mitre_techniques: List[MitreTechnique] = Field(default_factory=list)
    contributing_agents: List[str] = Field(default_factory=list)
    failed_agents: List[str] = Field(default_factory=list)
    phases: Dict[str, PhaseOutput] = Field(default_factory=dict)
    history: List[PhaseRecord] = Field(default_factory=list)
