import json
from typing import Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from socflow.core.config import settings
from socflow.core.errors import SynthesisPhaseFailure
from socflow.schemas.analysis import (
    AgentFinding,
    MitreTechnique,
    OrchestrationResult,
    PhaseOutput,
    ThreatIntelReport,
    max_severity,
)
from socflow.schemas.incidents import IncidentDraft
from socflow.services.llm_client import LLMClient, clamp_confidence, normalize_vote


class HistoricalContext(BaseModel):
    similar: int = 0
    similar_true_positive: int = 0
    similar_false_positive: int = 0


class SynthesisContext(BaseModel):
    draft: IncidentDraft
    orchestration: OrchestrationResult
    threat_report: ThreatIntelReport
    history: HistoricalContext = Field(default_factory=HistoricalContext)
    threshold: int = 70


class VoteTally(BaseModel):
    classification: str
    confidence: int
    tie: bool = False
    support: float = 0.0
    opposition: float = 0.0


def weighted_vote(votes: List[Tuple[str, float]]) -> VoteTally:
    """
    Confidence-weighted vote. The winner's confidence is its mean vote
    confidence scaled by its share of the decisive weight. Ties go to
    true-positive and are flagged.
    """
    tp = [c for v, c in votes if v == "true-positive"]
    fp = [c for v, c in votes if v == "false-positive"]
    tp_weight, fp_weight = sum(tp), sum(fp)
    if tp_weight == 0 and fp_weight == 0:
        return VoteTally(classification="inconclusive", confidence=0)

    if tp_weight >= fp_weight:
        winner, support, opposition, winning = "true-positive", tp_weight, fp_weight, tp
    else:
        winner, support, opposition, winning = "false-positive", fp_weight, tp_weight, fp
    agreement = support / (support + opposition)
    confidence = (support / len(winning)) * agreement
    return VoteTally(
        classification=winner,
        confidence=clamp_confidence(round(confidence)),
        tie=tp_weight == fp_weight,
        support=support,
        opposition=opposition,
    )


def finding_votes(findings: List[AgentFinding]) -> List[Tuple[str, float]]:
    return [(f.vote, float(f.confidence)) for f in findings]


def _recommendations(findings: List[AgentFinding], extra: Optional[List[str]] = None, limit: int = 6) -> List[str]:
    recs: List[str] = []
    for rec in list(extra or []) + [r for f in findings for r in f.recommendations]:
        if rec and rec not in recs:
            recs.append(rec)
    return recs[:limit]


def _severity_for(classification: str, hints: List[Optional[str]], floor: str = "medium") -> str:
    if classification == "false-positive":
        return "low"
    return max_severity(*hints) or floor


class Analyst:
    """
    One synthesis phase. assess() receives the outputs of the phases already
    completed, keyed by phase name.
    """

    role: str = "analyst"
    phase: str = "analysis"

    def __init__(self, llm: Optional[LLMClient] = None, llm_assist: Optional[bool] = None):
        llm_assist = settings.SYNTHESIS_LLM_ASSIST if llm_assist is None else llm_assist
        if llm_assist and llm is None:
            llm = LLMClient()
        self.llm = llm
        self.llm_assist = bool(llm_assist and llm is not None)

    async def assess(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> PhaseOutput:
        if self.llm_assist:
            return await self._ask_llm(ctx, prior)
        return self.evaluate(ctx, prior)

    def evaluate(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> PhaseOutput:
        raise NotImplementedError()

    def _prompt(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> str:
        findings = [f.model_dump(include={"agent", "vote", "confidence", "rationale", "key_findings"})
                    for f in ctx.orchestration.findings]
        return f"""
You are the {self.role} in a SOC dual-analyst review.

Return ONLY valid JSON:
{{
  "classification": "true-positive | false-positive | inconclusive",
  "severity": "critical | high | medium | low | informational",
  "confidence": 0,
  "explanation": "string",
  "recommendations": ["string"]
}}

Incident: {ctx.draft.title}
Agent findings:
{json.dumps(findings, indent=2)}

Threat intel: risk {ctx.threat_report.risk_score} ({ctx.threat_report.threat_level}) - {ctx.threat_report.summary}

Earlier phases:
{json.dumps({k: v.model_dump() for k, v in prior.items()}, indent=2)}
"""

    async def _ask_llm(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> PhaseOutput:
        try:
            parsed = await self.llm.ask_json(self._prompt(ctx, prior))
        except (httpx.HTTPError, ValueError) as exc:
            raise SynthesisPhaseFailure(self.phase, f"{type(exc).__name__}: {exc}") from exc
        severity = str(parsed.get("severity") or "").lower()
        if severity not in ("critical", "high", "medium", "low", "informational"):
            severity = "medium"
        recs = parsed.get("recommendations") or []
        return PhaseOutput(
            phase=self.phase,
            classification=normalize_vote(parsed.get("classification")),
            severity=severity,
            confidence=clamp_confidence(parsed.get("confidence")),
            explanation=str(parsed.get("explanation") or f"{self.role} assessment"),
            recommendations=[str(r) for r in recs][:6] if isinstance(recs, list) else [],
        )


class TacticalAnalyst(Analyst):
    """Technical evidence: log artefacts and indicator reputation."""

    role = "Tactical Analyst"
    phase = "tactical-analysis"

    def evaluate(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> PhaseOutput:
        report = ctx.threat_report
        technical = [f for f in ctx.orchestration.findings if f.evidence_kind == "technical"]
        tally = weighted_vote(finding_votes(technical))
        confidence = float(tally.confidence)
        classification = tally.classification

        if classification == "inconclusive" and report.malicious_count:
            classification = "true-positive"
            confidence = report.risk_score * 0.6

        # missing agents weaken whatever evidence is left
        confidence *= 0.5 + 0.5 * ctx.orchestration.coverage

        hints = [f.severity_hint for f in technical if f.vote == classification]
        if report.malicious_count:
            hints.append(report.threat_level)
        severity = _severity_for(classification, hints)

        explanation = (
            f"{len(technical)} technical findings ({tally.classification}, support {tally.support:.0f} "
            f"vs {tally.opposition:.0f}); threat intel risk {report.risk_score} with "
            f"{report.malicious_count} malicious of {len(report.indicators)} indicators"
        )
        return PhaseOutput(
            phase=self.phase,
            classification=classification,
            severity=severity,
            confidence=clamp_confidence(round(confidence)),
            explanation=explanation,
            recommendations=_recommendations(technical, report.recommendations),
        )


class StrategicAnalyst(Analyst):
    """Behavioural evidence: ATT&CK coverage, behaviour vectors and incident history."""

    role = "Strategic Analyst"
    phase = "strategic-analysis"

    def evaluate(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> PhaseOutput:
        behavioral = [f for f in ctx.orchestration.findings if f.evidence_kind == "behavioral"]
        votes = finding_votes(behavioral)
        history = ctx.history
        if history.similar_true_positive:
            votes.append(("true-positive", float(min(50, 10 * history.similar_true_positive))))
        if history.similar_false_positive:
            votes.append(("false-positive", float(min(50, 10 * history.similar_false_positive))))
        tally = weighted_vote(votes)
        confidence = float(tally.confidence)

        tactical = prior.get("tactical-analysis")
        if tactical and tally.classification != "inconclusive":
            if tactical.classification == tally.classification:
                confidence += 5
            elif tactical.classification != "inconclusive":
                confidence -= 10
        confidence *= 0.5 + 0.5 * ctx.orchestration.coverage

        hints = [f.severity_hint for f in behavioral if f.vote == tally.classification]
        severity = _severity_for(tally.classification, hints)
        techniques = {t.technique_id for f in behavioral for t in f.mitre_techniques}
        explanation = (
            f"{len(behavioral)} behavioural findings ({tally.classification}); "
            f"{len(techniques)} ATT&CK techniques; {history.similar} similar prior incidents "
            f"({history.similar_true_positive} true-positive, {history.similar_false_positive} false-positive)"
        )
        return PhaseOutput(
            phase=self.phase,
            classification=tally.classification,
            severity=severity,
            confidence=clamp_confidence(round(confidence)),
            explanation=explanation,
            recommendations=_recommendations(behavioral),
        )


class ChiefAnalyst(Analyst):
    """Reconciles the tactical and strategic verdicts into the final one."""

    role = "Chief Analyst"
    phase = "chief-synthesis"

    TACTICAL_WEIGHT = 0.55
    STRATEGIC_WEIGHT = 0.45
    AGREEMENT_BONUS = 10

    def evaluate(self, ctx: SynthesisContext, prior: Dict[str, PhaseOutput]) -> PhaseOutput:
        tactical = prior["tactical-analysis"]
        strategic = prior["strategic-analysis"]
        cap = ctx.threshold - 1
        capped = False

        if tactical.classification == strategic.classification != "inconclusive":
            classification = tactical.classification
            confidence = (
                tactical.confidence * self.TACTICAL_WEIGHT
                + strategic.confidence * self.STRATEGIC_WEIGHT
                + self.AGREEMENT_BONUS
            )
            reason = f"Tactical and strategic analysts agree on {classification}"
        elif "inconclusive" in (tactical.classification, strategic.classification):
            decisive = strategic if tactical.classification == "inconclusive" else tactical
            classification = decisive.classification
            confidence = decisive.confidence * 0.9
            reason = f"Only the {decisive.phase} phase reached a verdict"
        else:
            if tactical.confidence == strategic.confidence:
                winner = tactical if tactical.classification == "true-positive" else strategic
                loser = strategic if winner is tactical else tactical
                capped = True
                reason = "Analysts disagree with equal confidence; defaulting to true-positive for review"
            else:
                winner, loser = sorted((tactical, strategic), key=lambda p: p.confidence, reverse=True)
                reason = f"Analysts disagree; {winner.phase} outweighs {loser.phase}"
            classification = winner.classification
            confidence = winner.confidence - loser.confidence / 2

        if ctx.orchestration.no_findings:
            capped = True
            reason += "; no agent findings were available"
        if capped:
            confidence = min(confidence, cap)

        if classification == "true-positive":
            severity = max_severity(tactical.severity, strategic.severity) or "medium"
        elif classification == "false-positive":
            severity = "informational" if tactical.severity == strategic.severity == "informational" else "low"
        else:
            severity = max_severity(tactical.severity, strategic.severity) or "medium"

        return PhaseOutput(
            phase=self.phase,
            classification=classification,
            severity=severity,
            confidence=clamp_confidence(round(confidence)),
            explanation=f"{reason}. Tactical: {tactical.explanation}. Strategic: {strategic.explanation}.",
            recommendations=_recommendations([], tactical.recommendations + strategic.recommendations),
        )


def single_phase_fallback(ctx: SynthesisContext) -> PhaseOutput:
    """Degraded verdict from the raw findings; never confident enough to auto-classify."""
    findings = ctx.orchestration.findings
    tally = weighted_vote(finding_votes(findings))
    hints = [f.severity_hint for f in findings if f.vote == tally.classification]
    return PhaseOutput(
        phase="degraded",
        classification=tally.classification,
        severity=_severity_for(tally.classification, hints),
        confidence=min(tally.confidence, ctx.threshold - 1),
        explanation=f"Single-phase synthesis over {len(findings)} findings after analyst failure",
        recommendations=_recommendations(findings, ["Manual analyst review required"]),
    )


def merged_techniques(ctx: SynthesisContext) -> List[MitreTechnique]:
    unique: Dict[str, MitreTechnique] = {t.technique_id: t for t in ctx.draft.mitre_techniques}
    for finding in ctx.orchestration.findings:
        for technique in finding.mitre_techniques:
            current = unique.get(technique.technique_id)
            if current is None or technique.confidence > current.confidence:
                unique[technique.technique_id] = technique
    return sorted(unique.values(), key=lambda t: t.technique_id)
