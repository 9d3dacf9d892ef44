from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from socflow.schemas.analysis import Indicator, MitreTechnique, Severity

Source = Literal["manual", "siem-webhook", "siem-api"]
AUTOMATED_SOURCES = {"siem-webhook", "siem-api"}
Classification = Literal["unset", "true-positive", "false-positive", "needs-review"]
Status = Literal["open", "in-progress", "closed"]


class IncidentSubmission(BaseModel):
    """Inbound submission body shared by the manual form and SIEM integrations."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    system_context: Optional[str] = Field(default=None, alias="systemContext")
    log_data: Optional[str] = Field(default=None, alias="logData")
    additional_logs: Optional[str] = Field(default=None, alias="additionalLogs")
    iocs: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    mitre_attack: List[Any] = Field(default_factory=list, alias="mitreAttack")
    severity: Optional[str] = None
    source: str = "manual"
    siem_integration_id: Optional[str] = Field(default=None, alias="siemIntegrationId")
    siem_type: Optional[str] = Field(default=None, alias="siemType")
    siem_incident_id: Optional[str] = Field(default=None, alias="siemIncidentId")


class IncidentDraft(BaseModel):
    id: Optional[str] = None
    title: str
    system_context: str = ""
    log_data: str = ""
    additional_logs: str = ""
    iocs: List[Indicator] = Field(default_factory=list)
    mitre_techniques: List[MitreTechnique] = Field(default_factory=list)
    severity: Optional[Severity] = None
    source: Source = "manual"
    siem_type: Optional[str] = None
    siem_integration_id: Optional[str] = None
    siem_incident_id: Optional[str] = None

    @property
    def is_automated(self) -> bool:
        return self.source in AUTOMATED_SOURCES

    @property
    def content(self) -> str:
        parts = [self.title, self.system_context, self.log_data, self.additional_logs]
        return "\n".join(p for p in parts if p)


class CommentCreate(BaseModel):
    author: str
    body: str


class OverrideRequest(BaseModel):
    author: str
    classification: Literal["true-positive", "false-positive"]
    severity: Optional[Severity] = None
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    comment: Optional[str] = None


class CloseRequest(BaseModel):
    author: str
    comment: Optional[str] = None


class CommentRecord(BaseModel):
    id: int
    created_at: Optional[str]
    author: str
    kind: str
    body: str


class IncidentRecord(BaseModel):
    id: str
    created_at: Optional[str]
    updated_at: Optional[str]
    title: str
    system_context: Optional[str]
    log_data: str
    additional_logs: Optional[str]
    severity: Optional[str]
    status: str
    classification: str
    needs_review: bool
    confidence: Optional[int]
    analysis_confidence: Optional[int]
    mitre_techniques: List[MitreTechnique]
    iocs: List[Indicator]
    source: str
    siem_type: Optional[str]
    siem_integration_id: Optional[str]
    siem_incident_id: Optional[str]
    analysis_state: Optional[str]
    analysis: Dict[str, Any]
    analyzed_at: Optional[str]
    comments: List[CommentRecord]


class WebhookAccepted(BaseModel):
    incident_id: str
    status: str = "accepted"
