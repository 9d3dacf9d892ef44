import asyncio
import json
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx
from sqlalchemy.orm import Session

from socflow.core.config import settings
from socflow.core.errors import IncidentNotFound, InvalidDeliveryTransition, SiemDeliveryError
from socflow.models.incident import Incident
from socflow.models.siem import SiemEndpoint, SiemResponse
from socflow.schemas.analysis import MitreTechnique
from socflow.schemas.incidents import AUTOMATED_SOURCES
from socflow.schemas.siem import SiemDeliveryPayload, SiemEndpointUpsert

logger = logging.getLogger(__name__)

# status -> statuses it may move to; sent and not-configured are terminal.
# A record stays failed while it backs off; each retry moves failed -> failed or sent.
TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"sent", "failed"},
    "failed": {"sent", "failed"},
    "sent": set(),
    "not-configured": set(),
}


def transition(record: SiemResponse, target: str, final: bool = False) -> None:
    if record.final or target not in TRANSITIONS.get(record.status, set()):
        raise InvalidDeliveryTransition(record.status, target)
    record.status = target
    record.final = final or target == "sent"


def build_payload(incident: Incident) -> SiemDeliveryPayload:
    techniques = json.loads(incident.mitre_techniques_json) if incident.mitre_techniques_json else []
    analysis = json.loads(incident.analysis_json) if incident.analysis_json else {}
    recommendations = (analysis.get("synthesis") or {}).get("recommendations") or []
    analyzed_at = incident.analyzed_at
    if analyzed_at is not None and analyzed_at.tzinfo is None:
        analyzed_at = analyzed_at.replace(tzinfo=timezone.utc)
    return SiemDeliveryPayload(
        incident_id=incident.id,
        classification=incident.classification,
        severity=incident.severity,
        confidence=incident.confidence,
        mitre_attack=[MitreTechnique(**t) for t in techniques],
        recommendations=recommendations,
        analyzed_at=analyzed_at.isoformat() if analyzed_at else None,
    )


class SiemResponseDispatcher:
    """
    Delivers analysis results back to the originating SIEM.
    Every delivery runs as its own background task and never raises into the caller.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base: Optional[float] = None,
        retry_factor: Optional[float] = None,
        retry_cap: Optional[float] = None,
        jitter: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.timeout = timeout if timeout is not None else settings.SIEM_DELIVERY_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.SIEM_MAX_RETRIES
        self.retry_base = retry_base if retry_base is not None else settings.SIEM_RETRY_BASE_SECONDS
        self.retry_factor = retry_factor if retry_factor is not None else settings.SIEM_RETRY_FACTOR
        self.retry_cap = retry_cap if retry_cap is not None else settings.SIEM_RETRY_CAP_SECONDS
        self.jitter = jitter if jitter is not None else settings.SIEM_RETRY_JITTER
        self.transport = transport
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._tasks: Set[asyncio.Task] = set()

    # Endpoint registry

    def resolve_endpoint(self, session: Session, siem_type: str) -> Optional[Tuple[str, Optional[str]]]:
        row = session.query(SiemEndpoint).filter(SiemEndpoint.siem_type == siem_type).first()
        if row is not None:
            # an explicitly disabled endpoint is not configured, whatever the env says
            return (row.endpoint_url, row.auth_token) if row.enabled else None
        url = settings.SIEM_ENDPOINTS.get(siem_type)
        return (url, None) if url else None

    def upsert_endpoint(self, session: Session, siem_type: str, data: SiemEndpointUpsert) -> SiemEndpoint:
        siem_type = siem_type.strip().lower()
        row = session.query(SiemEndpoint).filter(SiemEndpoint.siem_type == siem_type).first()
        if row is None:
            row = SiemEndpoint(siem_type=siem_type)
            session.add(row)
        row.endpoint_url = data.endpoint_url
        row.auth_token = data.auth_token
        row.enabled = data.enabled
        session.commit()
        session.refresh(row)
        logger.info("siem endpoint saved", extra={"siem_type": siem_type, "enabled": row.enabled})
        return row

    def list_endpoints(self, session: Session) -> List[SiemEndpoint]:
        return session.query(SiemEndpoint).order_by(SiemEndpoint.siem_type.asc()).all()

    # Delivery

    def backoff(self, retry_number: int) -> float:
        delay = min(self.retry_cap, self.retry_base * (self.retry_factor ** (retry_number - 1)))
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    async def dispatch(self, incident_id: str) -> Optional[SiemResponse]:
        """
        Creates the delivery record for an analysed automated incident and starts
        the delivery task. Manual incidents are ignored and return None.
        """
        db = self.session_factory()
        try:
            incident = db.get(Incident, incident_id)
            if incident is None:
                raise IncidentNotFound(incident_id)
            if incident.source not in AUTOMATED_SOURCES:
                return None

            siem_type = incident.siem_type or "unknown"
            payload = build_payload(incident)
            endpoint = self.resolve_endpoint(db, siem_type)
            record = SiemResponse(
                incident_id=incident.id,
                siem_type=siem_type,
                endpoint_url=endpoint[0] if endpoint else None,
                status="pending" if endpoint else "not-configured",
                final=endpoint is None,
                payload_json=json.dumps(payload.to_wire()),
                retried_count=0,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            db.expunge(record)
        finally:
            db.close()

        if endpoint is None:
            logger.warning(
                "no siem endpoint configured",
                extra={"incident_id": incident_id, "siem_type": siem_type}
            )
            return record

        task = asyncio.ensure_future(self._deliver(record.id, incident_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record

    async def _post(self, url: str, token: Optional[str], siem_incident_id: Optional[str], body: dict) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if siem_incident_id:
            headers["X-Siem-Incident-Id"] = siem_incident_id
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            return await client.post(url, json=body, headers=headers)

    async def _attempt(self, record_id: str) -> None:
        db = self.session_factory()
        try:
            record = db.get(SiemResponse, record_id)
            incident = db.get(Incident, record.incident_id)
            endpoint = self.resolve_endpoint(db, record.siem_type)
            url, token = endpoint if endpoint else (record.endpoint_url, None)
            siem_incident_id = incident.siem_incident_id if incident else None
            body = json.loads(record.payload_json or "{}")
        finally:
            db.close()

        try:
            response = await self._post(url, token, siem_incident_id, body)
        except httpx.HTTPError as exc:
            raise SiemDeliveryError(f"{type(exc).__name__}: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise SiemDeliveryError(
                f"SIEM responded HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        db = self.session_factory()
        try:
            record = db.get(SiemResponse, record_id)
            transition(record, "sent")
            record.http_status = response.status_code
            record.response_body = response.text
            record.error_message = None
            record.sent_at = datetime.now(timezone.utc)
            record.next_attempt_at = None
            db.commit()
        finally:
            db.close()

    def _record_failure(self, record_id: str, incident_id: str, exc: SiemDeliveryError) -> Optional[float]:
        """Marks the record failed; returns the retry delay, or None when it is final."""
        db = self.session_factory()
        try:
            record = db.get(SiemResponse, record_id)
            exhausted = record.retried_count >= self.max_retries
            transition(record, "failed", final=exhausted)
            record.http_status = exc.status_code
            record.error_message = str(exc)
            record.response_body = exc.body
            delay = None
            if exhausted:
                record.next_attempt_at = None
            else:
                delay = self.backoff(record.retried_count + 1)
                record.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            retried = record.retried_count
            db.commit()
        finally:
            db.close()

        if delay is None:
            logger.error(
                "siem delivery permanently failed",
                extra={"incident_id": incident_id, "record_id": record_id, "retried_count": retried, "error": str(exc)}
            )
        else:
            logger.warning(
                "siem delivery failed, retrying",
                extra={"incident_id": incident_id, "record_id": record_id, "delay": round(delay, 2), "error": str(exc)}
            )
        return delay

    def _mark_retry(self, record_id: str) -> None:
        """Counts the retry attempt; the record keeps its failed status until the attempt resolves."""
        db = self.session_factory()
        try:
            record = db.get(SiemResponse, record_id)
            if record.final:
                raise InvalidDeliveryTransition(record.status, record.status)
            record.retried_count = (record.retried_count or 0) + 1
            record.next_attempt_at = None
            db.commit()
        finally:
            db.close()

    async def _deliver(self, record_id: str, incident_id: str) -> None:
        try:
            while True:
                try:
                    await self._attempt(record_id)
                    logger.info("siem delivery sent", extra={"incident_id": incident_id, "record_id": record_id})
                    return
                except SiemDeliveryError as exc:
                    delay = self._record_failure(record_id, incident_id, exc)
                if delay is None:
                    return
                await self._sleep(delay)
                self._mark_retry(record_id)
        except asyncio.CancelledError:
            logger.warning("siem delivery cancelled", extra={"incident_id": incident_id, "record_id": record_id})
            raise
        except Exception:
            logger.exception("siem delivery crashed", extra={"incident_id": incident_id, "record_id": record_id})

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
