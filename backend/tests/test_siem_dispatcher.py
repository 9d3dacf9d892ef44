"""
Tests for SIEM response delivery and its state machine.
"""

import json
import random
from typing import List

import httpx
import pytest

from socflow.core.errors import InvalidDeliveryTransition
from socflow.models.incident import Incident
from socflow.models.siem import SiemResponse
from socflow.schemas.siem import SiemEndpointUpsert
from socflow.services.ingestion import normalize_submission, persist_draft
from socflow.services.siem_dispatcher import SiemResponseDispatcher, transition

from conftest import RecordingSleep, powershell_submission


def seed_incident(session_factory, source: str = "siem-webhook") -> str:
    extra = {"siemType": "splunk", "siemIncidentId": "SPL-1001"} if source != "manual" else {}
    db = session_factory()
    try:
        row = persist_draft(db, normalize_submission(powershell_submission(source=source, **extra)))
        row.classification = "true-positive"
        row.severity = "high"
        row.confidence = 91
        row.mitre_techniques_json = json.dumps([{"technique_id": "T1059.001", "name": "PowerShell"}])
        row.analysis_json = json.dumps({"synthesis": {"recommendations": ["Isolate WS-042"]}})
        db.commit()
        return row.id
    finally:
        db.close()


def register_endpoint(session_factory, dispatcher, token: str = None) -> None:
    db = session_factory()
    try:
        dispatcher.upsert_endpoint(db, "splunk", SiemEndpointUpsert(endpoint_url="https://siem.test/hook", auth_token=token))
    finally:
        db.close()


def load(session_factory, record_id: str) -> SiemResponse:
    db = session_factory()
    try:
        record = db.get(SiemResponse, record_id)
        db.expunge(record)
        return record
    finally:
        db.close()


def dispatcher_for(session_factory, handler, sleep=None, max_retries: int = 5) -> SiemResponseDispatcher:
    return SiemResponseDispatcher(
        session_factory,
        transport=httpx.MockTransport(handler),
        sleep=sleep or RecordingSleep(),
        rng=random.Random(1),
        max_retries=max_retries,
        retry_base=5,
        retry_factor=2,
        retry_cap=300,
        jitter=0.2,
    )


class TestDelivery:
    """Tests for delivery outcomes."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self, session_factory):
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202, text="queued")

        dispatcher = dispatcher_for(session_factory, handler)
        register_endpoint(session_factory, dispatcher, token="s3cret")
        incident_id = seed_incident(session_factory)

        record = await dispatcher.dispatch(incident_id)
        await dispatcher.wait_idle()
        stored = load(session_factory, record.id)

        assert stored.status == "sent"
        assert stored.final is True
        assert stored.retried_count == 0
        assert stored.http_status == 202
        assert stored.sent_at is not None

        body = json.loads(requests[0].content)
        assert set(body) == {
            "incidentId", "classification", "severity", "confidence", "mitreAttack", "recommendations", "analyzedAt",
        }
        assert body["incidentId"] == incident_id
        assert body["confidence"] == 91
        assert body["recommendations"] == ["Isolate WS-042"]
        assert requests[0].headers["Authorization"] == "Bearer s3cret"
        assert requests[0].headers["X-Siem-Incident-Id"] == "SPL-1001"

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_fails_permanently(self, session_factory):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sleep = RecordingSleep()
        dispatcher = dispatcher_for(session_factory, handler, sleep=sleep, max_retries=5)
        register_endpoint(session_factory, dispatcher)
        incident_id = seed_incident(session_factory)

        record = await dispatcher.dispatch(incident_id)
        await dispatcher.wait_idle()
        stored = load(session_factory, record.id)

        assert stored.status == "failed"
        assert stored.final is True
        assert stored.retried_count == 5
        assert "ConnectError" in stored.error_message
        assert stored.next_attempt_at is None
        assert len(sleep.delays) == 5

    @pytest.mark.asyncio
    async def test_backoff_grows_and_respects_jitter(self, session_factory):
        sleep = RecordingSleep()
        dispatcher = dispatcher_for(session_factory, lambda request: httpx.Response(503), sleep=sleep, max_retries=4)
        register_endpoint(session_factory, dispatcher)
        incident_id = seed_incident(session_factory)

        record = await dispatcher.dispatch(incident_id)
        await dispatcher.wait_idle()

        for n, delay in enumerate(sleep.delays, start=1):
            nominal = 5 * 2 ** (n - 1)
            assert nominal * 0.8 <= delay <= nominal * 1.2
        stored = load(session_factory, record.id)
        assert stored.http_status == 503
        assert stored.retried_count == 4

    @pytest.mark.asyncio
    async def test_record_stays_failed_between_retries(self, session_factory):
        observed: List[str] = []

        def current_status() -> str:
            db = session_factory()
            try:
                return db.query(SiemResponse).one().status
            finally:
                db.close()

        def handler(request: httpx.Request) -> httpx.Response:
            observed.append(current_status())
            return httpx.Response(503)

        async def sleep(delay: float) -> None:
            observed.append(current_status())

        dispatcher = dispatcher_for(session_factory, handler, sleep=sleep, max_retries=2)
        register_endpoint(session_factory, dispatcher)

        record = await dispatcher.dispatch(seed_incident(session_factory))
        await dispatcher.wait_idle()
        stored = load(session_factory, record.id)

        # first POST while pending, then every wait and retry sees failed
        assert observed == ["pending", "failed", "failed", "failed", "failed"]
        assert stored.status == "failed"
        assert stored.final is True
        assert stored.retried_count == 2

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, session_factory):
        responses = [httpx.Response(500, text="oops"), httpx.Response(200, text="ok")]
        dispatcher = dispatcher_for(session_factory, lambda request: responses.pop(0))
        register_endpoint(session_factory, dispatcher)
        incident_id = seed_incident(session_factory)

        record = await dispatcher.dispatch(incident_id)
        await dispatcher.wait_idle()
        stored = load(session_factory, record.id)

        assert stored.status == "sent"
        assert stored.retried_count == 1
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_not_configured(self, session_factory):
        dispatcher = dispatcher_for(session_factory, lambda request: httpx.Response(200))
        incident_id = seed_incident(session_factory)

        record = await dispatcher.dispatch(incident_id)
        await dispatcher.wait_idle()
        stored = load(session_factory, record.id)

        assert stored.status == "not-configured"
        assert stored.final is True
        assert stored.retried_count == 0
        assert stored.endpoint_url is None

    @pytest.mark.asyncio
    async def test_disabled_endpoint_is_not_configured(self, session_factory):
        dispatcher = dispatcher_for(session_factory, lambda request: httpx.Response(200))
        db = session_factory()
        try:
            dispatcher.upsert_endpoint(db, "splunk", SiemEndpointUpsert(endpoint_url="https://siem.test/hook", enabled=False))
        finally:
            db.close()

        record = await dispatcher.dispatch(seed_incident(session_factory))
        assert record.status == "not-configured"

    @pytest.mark.asyncio
    async def test_manual_incident_not_dispatched(self, session_factory):
        dispatcher = dispatcher_for(session_factory, lambda request: httpx.Response(200))
        assert await dispatcher.dispatch(seed_incident(session_factory, source="manual")) is None


class TestTransitions:
    """Tests for the delivery state machine."""

    def test_terminal_states_reject_changes(self):
        sent = SiemResponse(status="sent", final=True)
        with pytest.raises(InvalidDeliveryTransition):
            transition(sent, "pending")

        not_configured = SiemResponse(status="not-configured", final=True)
        with pytest.raises(InvalidDeliveryTransition):
            transition(not_configured, "pending")

    def test_final_failure_cannot_retry(self):
        failed = SiemResponse(status="failed", final=True)
        with pytest.raises(InvalidDeliveryTransition):
            transition(failed, "failed")
        with pytest.raises(InvalidDeliveryTransition):
            transition(failed, "sent")

    def test_pending_cannot_skip_back(self):
        with pytest.raises(InvalidDeliveryTransition):
            transition(SiemResponse(status="pending", final=False), "pending")

    def test_failed_never_returns_to_pending(self):
        with pytest.raises(InvalidDeliveryTransition):
            transition(SiemResponse(status="failed", final=False), "pending")

    def test_retry_cycle(self):
        record = SiemResponse(status="pending", final=False)
        transition(record, "failed")
        transition(record, "failed")
        assert record.final is False
        transition(record, "sent")
        assert record.status == "sent"
        assert record.final is True

    def test_retries_exhausted(self):
        record = SiemResponse(status="pending", final=False)
        transition(record, "failed")
        transition(record, "failed", final=True)
        assert record.final is True
