import asyncio
import json
import re
from typing import List, Optional, Tuple, Union

import httpx

from socflow.core.errors import AgentFailure
from socflow.schemas.analysis import AgentFinding, MitreTechnique, ThreatIntelReport
from socflow.schemas.incidents import IncidentDraft
from socflow.services.llm_client import LLMClient, clamp_confidence, normalize_vote


class AgentContext:
    """
    Shared, read-only input of one orchestrator run.
    The threat-intel report may still be in flight; agents that need it await it.
    """

    def __init__(
        self,
        draft: IncidentDraft,
        threat_intel: Union[ThreatIntelReport, "asyncio.Future[ThreatIntelReport]"],
    ):
        self.draft = draft
        self._threat_intel = threat_intel

    @property
    def text(self) -> str:
        return self.draft.content

    @property
    def lower_text(self) -> str:
        return self.draft.content.lower()

    async def threat_report(self) -> ThreatIntelReport:
        if isinstance(self._threat_intel, ThreatIntelReport):
            return self._threat_intel
        # shield: a timed-out agent must not cancel the shared correlation task
        return await asyncio.shield(self._threat_intel)


Signal = Tuple[str, "re.Pattern[str]", int, str]


def match_signals(text: str, signals: List[Signal]) -> List[Tuple[str, int, str]]:
    hits = []
    for label, pattern, weight, severity in signals:
        if pattern.search(text):
            hits.append((label, weight, severity))
    return hits


class AnalysisAgent:
    """
    Base agent: a specialised classification capability that turns the incident
    context into one AgentFinding. Subclasses implement evaluate().
    """

    name: str = "base"
    evidence_kind: str = "technical"
    focus: str = "general security analysis"

    def __init__(self, llm: Optional[LLMClient] = None, llm_assist: bool = False):
        self.llm = llm
        self.llm_assist = llm_assist and llm is not None

    async def analyze(self, context: AgentContext) -> AgentFinding:
        if self.llm_assist:
            return await self._ask_llm(context)
        return await self.evaluate(context)

    async def evaluate(self, context: AgentContext) -> AgentFinding:
        raise NotImplementedError()

    def _finding(
        self,
        vote: str,
        confidence: int,
        rationale: str,
        severity_hint: Optional[str] = None,
        key_findings: Optional[List[str]] = None,
        recommendations: Optional[List[str]] = None,
        mitre_techniques: Optional[List[MitreTechnique]] = None,
    ) -> AgentFinding:
        return AgentFinding(
            agent=self.name,
            vote=vote,
            confidence=clamp_confidence(confidence),
            rationale=rationale,
            evidence_kind=self.evidence_kind,
            severity_hint=severity_hint,
            key_findings=key_findings or [],
            recommendations=recommendations or [],
            mitre_techniques=mitre_techniques or [],
        )

    def _prompt(self, context: AgentContext) -> str:
        return f"""
You are a SOC {self.focus} specialist.

Assess the incident below and return ONLY valid JSON:
{{
  "vote": "true-positive | false-positive | inconclusive",
  "confidence": 0,
  "severity": "critical | high | medium | low | informational",
  "rationale": "string",
  "key_findings": ["string"],
  "recommendations": ["string"]
}}

Rules:
- confidence must be between 0 and 100
- ONLY use the data given below, do not invent indicators

Incident:
{json.dumps(context.draft.model_dump(exclude={"id"}), indent=2)}
"""

    async def _ask_llm(self, context: AgentContext) -> AgentFinding:
        try:
            parsed = await self.llm.ask_json(self._prompt(context))
        except (httpx.HTTPError, ValueError) as exc:
            raise AgentFailure(self.name, f"{type(exc).__name__}: {exc}") from exc

        severity = str(parsed.get("severity") or "").lower() or None
        if severity not in ("critical", "high", "medium", "low", "informational"):
            severity = None
        findings = parsed.get("key_findings") or []
        recs = parsed.get("recommendations") or []
        return self._finding(
            vote=normalize_vote(parsed.get("vote")),
            confidence=clamp_confidence(parsed.get("confidence")),
            rationale=str(parsed.get("rationale") or f"{self.name} assessment"),
            severity_hint=severity,
            key_findings=[str(x) for x in findings if str(x).strip()][:5] if isinstance(findings, list) else [],
            recommendations=[str(x) for x in recs if str(x).strip()][:4] if isinstance(recs, list) else [],
        )
