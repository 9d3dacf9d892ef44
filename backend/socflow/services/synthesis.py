import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from socflow.core.config import settings
from socflow.core.errors import SynthesisPhaseFailure
from socflow.schemas.analysis import PhaseOutput, PhaseRecord, SynthesisResult
from socflow.services.analysts import (
    Analyst,
    ChiefAnalyst,
    StrategicAnalyst,
    SynthesisContext,
    TacticalAnalyst,
    merged_techniques,
    single_phase_fallback,
)

logger = logging.getLogger(__name__)

PHASES = ["tactical-analysis", "strategic-analysis", "chief-synthesis"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SynthesisStage:
    """
    Dual-analyst synthesis: tactical -> strategic -> chief.
    Each phase is retried with exponential backoff; once a phase exhausts its
    retries the stage falls back to a single-phase verdict marked degraded.
    """

    def __init__(
        self,
        tactical: Optional[Analyst] = None,
        strategic: Optional[Analyst] = None,
        chief: Optional[Analyst] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        phase_timeout: Optional[float] = None,
        threshold: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.analysts: Dict[str, Analyst] = {
            "tactical-analysis": tactical or TacticalAnalyst(),
            "strategic-analysis": strategic or StrategicAnalyst(),
            "chief-synthesis": chief or ChiefAnalyst(),
        }
        self.max_retries = max_retries if max_retries is not None else settings.SYNTHESIS_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.SYNTHESIS_RETRY_DELAY_SECONDS
        self.phase_timeout = phase_timeout if phase_timeout is not None else settings.SYNTHESIS_PHASE_TIMEOUT_SECONDS
        self.threshold = threshold if threshold is not None else settings.CONFIDENCE_THRESHOLD
        self._sleep = sleep

    async def _run_phase(
        self,
        phase: str,
        ctx: SynthesisContext,
        prior: Dict[str, PhaseOutput],
        history: List[PhaseRecord],
    ) -> PhaseOutput:
        analyst = self.analysts[phase]
        incident_id = ctx.draft.id or "-"
        last_error = "no attempt made"
        for attempt in range(1, self.max_retries + 2):
            history.append(PhaseRecord(state=phase, attempt=attempt, at=_now()))
            try:
                output = await asyncio.wait_for(analyst.assess(ctx, dict(prior)), timeout=self.phase_timeout)
                return output.model_copy(update={"phase": phase})
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.phase_timeout}s"
            except SynthesisPhaseFailure as exc:
                last_error = exc.reason
            except Exception as exc:
                logger.exception("analyst crashed", extra={"incident_id": incident_id, "phase": phase})
                last_error = f"{type(exc).__name__}: {exc}"

            history[-1] = history[-1].model_copy(update={"error": last_error})
            logger.warning(
                "synthesis phase attempt failed",
                extra={"incident_id": incident_id, "phase": phase, "attempt": attempt, "error": last_error},
            )
            if attempt <= self.max_retries:
                await self._sleep(self.retry_delay * (2 ** (attempt - 1)))
        raise SynthesisPhaseFailure(phase, last_error)

    def _result(
        self,
        state: str,
        verdict: PhaseOutput,
        ctx: SynthesisContext,
        phases: Dict[str, PhaseOutput],
        history: List[PhaseRecord],
    ) -> SynthesisResult:
        orchestration = ctx.orchestration
        return SynthesisResult(
            state=state,
            classification=verdict.classification,
            severity=verdict.severity,
            confidence=verdict.confidence,
            explanation=verdict.explanation,
            recommendations=verdict.recommendations,
            mitre_techniques=merged_techniques(ctx),
            contributing_agents=[f.agent for f in orchestration.findings],
            failed_agents=[f.agent for f in orchestration.failures],
            phases=phases,
            history=history,
        )

    async def run(self, ctx: SynthesisContext) -> SynthesisResult:
        if ctx.threshold != self.threshold:
            ctx = ctx.model_copy(update={"threshold": self.threshold})
        incident_id = ctx.draft.id or "-"
        history: List[PhaseRecord] = [PhaseRecord(state="queued", at=_now())]
        phases: Dict[str, PhaseOutput] = {}

        try:
            for phase in PHASES:
                phases[phase] = await self._run_phase(phase, ctx, phases, history)
        except SynthesisPhaseFailure as exc:
            history.append(PhaseRecord(state="degraded", at=_now(), error=str(exc)))
            logger.error("synthesis degraded", extra={"incident_id": incident_id, "phase": exc.phase})
            return self._result("degraded", single_phase_fallback(ctx), ctx, phases, history)

        history.append(PhaseRecord(state="complete", at=_now()))
        verdict = phases["chief-synthesis"]
        logger.info(
            "synthesis complete",
            extra={
                "incident_id": incident_id,
                "classification": verdict.classification,
                "confidence": verdict.confidence,
            },
        )
        return self._result("complete", verdict, ctx, phases, history)
