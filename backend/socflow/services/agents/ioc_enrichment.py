from socflow.services.agents.base import AgentContext, AnalysisAgent


class IocEnrichmentAgent(AnalysisAgent):
    """
    Judges the incident on the reputation of its individual indicators.
    """

    name = "ioc-enrichment"
    evidence_kind = "technical"
    focus = "IOC enrichment"

    async def evaluate(self, context: AgentContext):
        report = await context.threat_report()
        known = [i for i in report.indicators if i.status == "ok"]
        malicious = [i for i in known if i.malicious]

        if malicious:
            tags = sorted({t for i in malicious for t in i.tags})
            findings = [f"{i.type} {i.value} flagged by {i.source} (score {i.threat_score})" for i in malicious[:5]]
            if tags:
                findings.append(f"Tags: {', '.join(tags[:8])}")
            return self._finding(
                "true-positive",
                min(95, 60 + 10 * len(malicious) + report.risk_score // 5),
                f"{len(malicious)} of {len(report.indicators)} indicators have malicious reputation",
                severity_hint=report.threat_level,
                key_findings=findings,
                recommendations=report.recommendations[:4],
            )
        if known and all(i.malicious is False for i in known):
            return self._finding(
                "false-positive",
                60,
                f"All {len(known)} indicators with known reputation are clean",
                severity_hint="low",
                key_findings=[f"{i.type} {i.value} clean" for i in known[:5]],
            )
        return self._finding(
            "inconclusive",
            30,
            "No indicator reputation available",
            key_findings=[report.summary] if report.summary else [],
        )
