from socflow.services.agents.base import AgentContext, AnalysisAgent


class ThreatIntelligenceAgent(AnalysisAgent):
    """
    Reads the aggregate threat-intel picture: risk score, level and campaign tags.
    """

    name = "threat-intelligence"
    evidence_kind = "technical"
    focus = "threat intelligence"

    CAMPAIGN_TAGS = {"botnet", "c2", "apt", "ransomware", "tor", "malware", "phishing", "trojan"}

    async def evaluate(self, context: AgentContext):
        report = await context.threat_report()
        tags = {t.lower() for i in report.indicators for t in i.tags}
        campaign = sorted(self.CAMPAIGN_TAGS.intersection(tags))
        bonus = 10 if campaign else 0
        findings = [report.summary] if report.summary else []
        if campaign:
            findings.append(f"Campaign tags: {', '.join(campaign)}")

        if report.risk_score >= 60:
            return self._finding(
                "true-positive",
                min(95, report.risk_score + bonus),
                f"Threat intelligence risk {report.risk_score} ({report.threat_level})",
                severity_hint=report.threat_level,
                key_findings=findings,
                recommendations=report.recommendations[:3],
            )
        if report.risk_score >= 30 or campaign:
            return self._finding(
                "inconclusive",
                45 + bonus,
                f"Moderate threat intelligence risk {report.risk_score}",
                severity_hint=report.threat_level,
                key_findings=findings,
            )
        known = [i for i in report.indicators if i.status == "ok"]
        if known:
            return self._finding(
                "false-positive",
                min(70, 100 - report.risk_score - 30),
                f"Low threat intelligence risk {report.risk_score}",
                severity_hint="low",
                key_findings=findings,
            )
        return self._finding(
            "inconclusive",
            20,
            "No threat intelligence context available",
            key_findings=findings,
        )
