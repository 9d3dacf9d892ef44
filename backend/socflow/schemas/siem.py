from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from socflow.schemas.analysis import MitreTechnique


class SiemDeliveryPayload(BaseModel):
    """Outbound analysis contract POSTed back to the originating SIEM."""

    model_config = ConfigDict(populate_by_name=True)

    incident_id: str = Field(alias="incidentId")
    classification: str
    severity: Optional[str]
    confidence: Optional[int]
    mitre_attack: List[MitreTechnique] = Field(default_factory=list, alias="mitreAttack")
    recommendations: List[str] = Field(default_factory=list)
    analyzed_at: Optional[str] = Field(alias="analyzedAt")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class SiemResponseRecord(BaseModel):
    id: str
    incident_id: str
    siem_type: str
    endpoint_url: Optional[str]
    status: str
    final: bool
    http_status: Optional[int]
    error_message: Optional[str]
    payload: Optional[Any]
    response_body: Optional[str]
    sent_at: Optional[str]
    retried_count: int
    next_attempt_at: Optional[str]
    created_at: Optional[str]


class SiemEndpointUpsert(BaseModel):
    endpoint_url: str
    auth_token: Optional[str] = None
    enabled: bool = True


class SiemEndpointRecord(BaseModel):
    siem_type: str
    endpoint_url: str
    enabled: bool
    has_auth_token: bool
