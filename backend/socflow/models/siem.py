import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from socflow.database.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SiemResponse(Base):
    __tablename__ = "siem_responses"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    incident_id = Column(String, ForeignKey("incidents.id"), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    siem_type = Column(String, nullable=False)
    endpoint_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending, sent, failed, not-configured
    final = Column(Boolean, nullable=False, default=False)
    http_status = Column(Integer, nullable=True)
    error_message = Column(Text)
    payload_json = Column(Text)
    response_body = Column(Text)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    retried_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)


class SiemEndpoint(Base):
    __tablename__ = "siem_endpoints"

    id = Column(Integer, primary_key=True, index=True)
    siem_type = Column(String, unique=True, index=True, nullable=False)
    endpoint_url = Column(String, nullable=False)
    auth_token = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
