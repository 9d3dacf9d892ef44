import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from socflow.database.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Incident(Base):
    __tablename__ = "incidents"

    id = Column(String, primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    title = Column(String, nullable=False)
    system_context = Column(Text)
    log_data = Column(Text, nullable=False, default="")
    additional_logs = Column(Text)
    severity = Column(String, nullable=True)  # critical, high, medium, low, informational
    status = Column(String, nullable=False, default="open")  # open, in-progress, closed
    classification = Column(String, nullable=False, default="unset")
    needs_review = Column(Boolean, nullable=False, default=False)
    confidence = Column(Integer, nullable=True)
    analysis_confidence = Column(Integer, nullable=True)
    mitre_techniques_json = Column(Text)
    iocs_json = Column(Text)
    source = Column(String, nullable=False, default="manual", index=True)
    siem_type = Column(String, nullable=True, index=True)
    siem_integration_id = Column(String, nullable=True)
    siem_incident_id = Column(String, nullable=True)
    analysis_state = Column(String, nullable=True)
    analysis_json = Column(Text)
    analyzed_at = Column(DateTime(timezone=True), nullable=True)

    comments = relationship(
        "IncidentComment",
        back_populates="incident",
        order_by="IncidentComment.id",
        cascade="all, delete-orphan",
    )


class IncidentComment(Base):
    __tablename__ = "incident_comments"

    id = Column(Integer, primary_key=True, index=True)
    incident_id = Column(String, ForeignKey("incidents.id"), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    author = Column(String, nullable=False, default="system")
    kind = Column(String, nullable=False, default="system")  # system, analyst
    body = Column(Text, nullable=False)

    incident = relationship("Incident", back_populates="comments")
