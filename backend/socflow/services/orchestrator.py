import asyncio
import logging
from typing import List, Optional, Tuple, Union

from socflow.core.config import settings
from socflow.core.errors import AgentFailure, AgentTimeoutError
from socflow.schemas.analysis import AgentFailureRecord, AgentFinding, OrchestrationResult
from socflow.services.agents.base import AgentContext, AnalysisAgent
from socflow.services.agents.registry import AgentRegistry, build_default_registry

logger = logging.getLogger(__name__)

_Outcome = Union[AgentFinding, AgentFailureRecord]


class AgentOrchestrator:
    """
    Fans one incident context out to every registered agent in parallel.
    A failing or slow agent only reduces the evidence; it never aborts the run.
    """

    def __init__(
        self,
        registry: Optional[AgentRegistry] = None,
        agent_timeout: Optional[float] = None,
        overall_timeout: Optional[float] = None,
    ):
        self.registry = registry if registry is not None else build_default_registry()
        self.agent_timeout = agent_timeout if agent_timeout is not None else settings.AGENT_TIMEOUT_SECONDS
        self.overall_timeout = overall_timeout if overall_timeout is not None else settings.ORCHESTRATOR_TIMEOUT_SECONDS

    async def _run_agent(self, agent: AnalysisAgent, context: AgentContext, incident_id: str) -> _Outcome:
        try:
            finding = await asyncio.wait_for(agent.analyze(context), timeout=self.agent_timeout)
            if finding.agent != agent.name:
                finding = finding.model_copy(update={"agent": agent.name})
            return finding
        except asyncio.TimeoutError:
            exc = AgentTimeoutError(agent.name, self.agent_timeout)
            logger.warning(str(exc), extra={"incident_id": incident_id, "agent": agent.name})
            return AgentFailureRecord(agent=agent.name, reason=exc.reason, timed_out=True)
        except AgentFailure as exc:
            logger.warning(str(exc), extra={"incident_id": incident_id, "agent": agent.name})
            return AgentFailureRecord(agent=agent.name, reason=exc.reason)
        except Exception as exc:
            logger.exception("agent crashed", extra={"incident_id": incident_id, "agent": agent.name})
            return AgentFailureRecord(agent=agent.name, reason=f"{type(exc).__name__}: {exc}")

    async def run(self, context: AgentContext) -> OrchestrationResult:
        incident_id = context.draft.id or "-"
        agents = self.registry.agents()
        names = [a.name for a in agents]
        if not agents:
            logger.warning("no agents registered", extra={"incident_id": incident_id})
            return OrchestrationResult(registered=[])

        tasks: List[Tuple[str, asyncio.Task]] = [
            (a.name, asyncio.ensure_future(self._run_agent(a, context, incident_id))) for a in agents
        ]
        try:
            done, pending = await asyncio.wait([t for _, t in tasks], timeout=self.overall_timeout)
        except asyncio.CancelledError:
            for _, task in tasks:
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        findings: List[AgentFinding] = []
        failures: List[AgentFailureRecord] = []
        for name, task in tasks:
            if task in pending:
                failures.append(AgentFailureRecord(
                    agent=name,
                    reason=f"orchestration timed out after {self.overall_timeout}s",
                    timed_out=True,
                ))
                continue
            outcome = task.result()
            if isinstance(outcome, AgentFinding):
                findings.append(outcome)
            else:
                failures.append(outcome)

        result = OrchestrationResult(registered=names, findings=findings, failures=failures)
        if result.no_findings:
            logger.warning("no agent findings", extra={"incident_id": incident_id, "failed": len(failures)})
        else:
            logger.info(
                "agents completed",
                extra={"incident_id": incident_id, "findings": len(findings), "failed": len(failures)}
            )
        return result
