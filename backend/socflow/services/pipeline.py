import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set, Tuple

from sqlalchemy.orm import Session

from socflow.core.config import settings
from socflow.core.errors import ConcurrencyConflict
from socflow.database.db import SessionLocal
from socflow.schemas.analysis import (
    AgentFailureRecord,
    OrchestrationResult,
    SynthesisResult,
    ThreatIntelReport,
)
from socflow.schemas.incidents import IncidentDraft, IncidentRecord
from socflow.services.agents.base import AgentContext
from socflow.services.analysts import HistoricalContext, SynthesisContext, merged_techniques, single_phase_fallback
from socflow.services.classification import ClassificationEngine
from socflow.services.incident_store import get_incident, serialize_incident, similar_history
from socflow.services.ingestion import draft_from_row, normalize_submission, persist_draft
from socflow.services.orchestrator import AgentOrchestrator
from socflow.services.siem_dispatcher import SiemResponseDispatcher
from socflow.services.synthesis import SynthesisStage
from socflow.services.threat_intel import ThreatIntelCorrelator, build_report

logger = logging.getLogger(__name__)

CONFLICT_POLICIES = ("reject", "queue")


class IncidentPipeline:
    """
    Ingestion -> threat intel + agents -> synthesis -> classification -> SIEM dispatch.
    One analysis per incident at a time; the final commit is a single transaction.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        correlator: Optional[ThreatIntelCorrelator] = None,
        orchestrator: Optional[AgentOrchestrator] = None,
        synthesis: Optional[SynthesisStage] = None,
        engine: Optional[ClassificationEngine] = None,
        dispatcher: Optional[SiemResponseDispatcher] = None,
        conflict_policy: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.correlator = correlator or ThreatIntelCorrelator()
        self.orchestrator = orchestrator or AgentOrchestrator()
        self.synthesis = synthesis or SynthesisStage()
        self.engine = engine or ClassificationEngine()
        # the engine decides acceptance; synthesis caps ties and fallbacks against the same threshold
        self.synthesis.threshold = self.engine.threshold
        self.dispatcher = dispatcher or SiemResponseDispatcher(session_factory)
        self.conflict_policy = (conflict_policy or settings.ANALYSIS_CONFLICT_POLICY).lower()
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(f"unknown conflict policy '{self.conflict_policy}'")
        self.timeout = timeout if timeout is not None else settings.PIPELINE_TIMEOUT_SECONDS

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._cancelled: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

    # Entry points

    def ingest(self, payload: Dict[str, Any]) -> str:
        """Validates and stores a submission; raises ValidationError before anything is persisted."""
        draft = normalize_submission(payload)
        db = self.session_factory()
        try:
            return persist_draft(db, draft).id
        finally:
            db.close()

    async def submit(self, payload: Dict[str, Any]) -> IncidentRecord:
        incident_id = self.ingest(payload)
        return await self.analyze(incident_id)

    def schedule(self, incident_id: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._analyze_in_background(incident_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _analyze_in_background(self, incident_id: str) -> None:
        try:
            await self.analyze(incident_id)
        except ConcurrencyConflict:
            logger.warning("analysis already running, scheduled run skipped", extra={"incident_id": incident_id})
        except Exception:
            logger.exception("background analysis failed", extra={"incident_id": incident_id})

    async def analyze(self, incident_id: str) -> IncidentRecord:
        self._load(incident_id)

        lock = self._locks.setdefault(incident_id, asyncio.Lock())
        if lock.locked() and self.conflict_policy == "reject":
            raise ConcurrencyConflict(incident_id)

        self._lock_users[incident_id] = self._lock_users.get(incident_id, 0) + 1
        try:
            async with lock:
                task = asyncio.ensure_future(self._run(incident_id))
                self._running[incident_id] = task
                try:
                    return await task
                except asyncio.CancelledError:
                    if incident_id not in self._cancelled:
                        task.cancel()
                        raise
                    self._cancelled.discard(incident_id)
                    logger.warning("analysis cancelled", extra={"incident_id": incident_id})
                    return self.get(incident_id)
                finally:
                    self._running.pop(incident_id, None)
        finally:
            self._lock_users[incident_id] -= 1
            if not self._lock_users[incident_id]:
                self._lock_users.pop(incident_id, None)
                self._locks.pop(incident_id, None)

    def cancel(self, incident_id: str) -> bool:
        task = self._running.get(incident_id)
        if task is None or task.done():
            return False
        self._cancelled.add(incident_id)
        task.cancel()
        return True

    def is_running(self, incident_id: str) -> bool:
        task = self._running.get(incident_id)
        return task is not None and not task.done()

    def get(self, incident_id: str) -> IncidentRecord:
        db = self.session_factory()
        try:
            return serialize_incident(get_incident(db, incident_id))
        finally:
            db.close()

    async def wait_idle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.dispatcher.wait_idle()

    async def shutdown(self) -> None:
        for task in list(self._background) + list(self._running.values()):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.dispatcher.shutdown()

    # Pipeline body

    def _load(self, incident_id: str) -> Tuple[IncidentDraft, HistoricalContext]:
        db = self.session_factory()
        try:
            draft = draft_from_row(get_incident(db, incident_id))
            history = HistoricalContext(**similar_history(db, draft))
        finally:
            db.close()
        return draft, history

    async def _analyse(
        self,
        draft: IncidentDraft,
        history: HistoricalContext,
        intel_task: "asyncio.Future[ThreatIntelReport]",
        progress: Dict[str, Any],
    ) -> SynthesisResult:
        orchestration = await self.orchestrator.run(AgentContext(draft, intel_task))
        progress["orchestration"] = orchestration
        report = await asyncio.shield(intel_task)
        progress["report"] = report
        ctx = SynthesisContext(
            draft=draft,
            orchestration=orchestration,
            threat_report=report,
            history=history,
            threshold=self.engine.threshold,
        )
        progress["context"] = ctx
        return await self.synthesis.run(ctx)

    def _timed_out(self, draft: IncidentDraft, history: HistoricalContext, progress: Dict[str, Any]) -> SynthesisResult:
        orchestration = progress.get("orchestration")
        if orchestration is None:
            names = self.orchestrator.registry.names()
            orchestration = OrchestrationResult(
                registered=names,
                failures=[
                    AgentFailureRecord(agent=n, reason=f"pipeline timed out after {self.timeout}s", timed_out=True)
                    for n in names
                ],
            )
            progress["orchestration"] = orchestration
        ctx = progress.get("context") or SynthesisContext(
            draft=draft,
            orchestration=orchestration,
            threat_report=progress.get("report") or build_report([]),
            history=history,
            threshold=self.engine.threshold,
        )
        verdict = single_phase_fallback(ctx)
        return SynthesisResult(
            state="degraded",
            classification=verdict.classification,
            severity=verdict.severity,
            confidence=verdict.confidence,
            explanation=f"Analysis pipeline timed out after {self.timeout}s. {verdict.explanation}",
            recommendations=verdict.recommendations,
            mitre_techniques=merged_techniques(ctx),
            contributing_agents=[f.agent for f in orchestration.findings],
            failed_agents=[f.agent for f in orchestration.failures],
        )

    async def _run(self, incident_id: str) -> IncidentRecord:
        draft, history = self._load(incident_id)
        logger.info("analysis started", extra={"incident_id": incident_id, "ioc_count": len(draft.iocs)})

        progress: Dict[str, Any] = {}
        intel_task = asyncio.ensure_future(self.correlator.correlate(draft.iocs))
        try:
            try:
                result = await asyncio.wait_for(
                    self._analyse(draft, history, intel_task, progress), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                logger.error("analysis pipeline timed out", extra={"incident_id": incident_id})
                result = self._timed_out(draft, history, progress)
        finally:
            if not intel_task.done():
                intel_task.cancel()

        report = progress.get("report")
        if report is None and intel_task.done() and not intel_task.cancelled():
            report = intel_task.result()

        db = self.session_factory()
        try:
            incident = self.engine.commit(db, incident_id, result, progress["orchestration"], report)
            record = serialize_incident(incident)
        finally:
            db.close()

        if draft.is_automated:
            try:
                await self.dispatcher.dispatch(incident_id)
            except Exception:
                logger.exception("siem dispatch failed", extra={"incident_id": incident_id})
        return record


def build_pipeline(session_factory: Callable[[], Session] = SessionLocal, **overrides: Any) -> IncidentPipeline:
    return IncidentPipeline(session_factory=session_factory, **overrides)
