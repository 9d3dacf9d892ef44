import re

from socflow.services.agents.base import AgentContext, AnalysisAgent


class VulnerabilityAssessmentAgent(AnalysisAgent):
    """
    Weighs referenced CVEs against evidence that they were actually exploited.
    """

    name = "vulnerability-assessment"
    evidence_kind = "technical"
    focus = "vulnerability assessment"

    EXPLOITATION = re.compile(r"(exploit|\$\{jndi:|remote code execution|\brce\b|shellcode|buffer overflow|deserializ)")

    async def evaluate(self, context: AgentContext):
        cves = [i.value for i in context.draft.iocs if i.type == "cve"]
        exploited = bool(self.EXPLOITATION.search(context.lower_text))

        if cves and exploited:
            return self._finding(
                "true-positive",
                75,
                f"Exploitation activity referencing {', '.join(cves[:3])}",
                severity_hint="critical",
                key_findings=[f"{c} referenced alongside exploitation artefacts" for c in cves[:3]],
                recommendations=[f"Patch or mitigate {c} immediately" for c in cves[:2]],
            )
        if cves:
            return self._finding(
                "inconclusive",
                45,
                f"Vulnerabilities referenced without exploitation evidence: {', '.join(cves[:3])}",
                severity_hint="medium",
                recommendations=[f"Verify patch status for {c}" for c in cves[:2]],
            )
        if exploited:
            return self._finding(
                "inconclusive",
                50,
                "Exploitation language present without a CVE reference",
                severity_hint="high",
            )
        return self._finding("inconclusive", 20, "No vulnerability context")
