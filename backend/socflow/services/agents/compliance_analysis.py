import re
from typing import Dict, List

from socflow.services.agents.base import AgentContext, AnalysisAgent


class ComplianceAnalysisAgent(AnalysisAgent):
    """
    Regulatory impact of the incident: which regulated data classes are in
    scope and whether the log shows that data leaving its boundary.
    Only votes when regulated data is actually exposed; otherwise it reports
    the frameworks in scope and stays inconclusive.
    """

    name = "compliance-analysis"
    evidence_kind = "behavioral"
    focus = "compliance and regulatory impact"

    FRAMEWORKS: Dict[str, "re.Pattern[str]"] = {
        "GDPR": re.compile(r"(personal data|\bpii\b|gdpr|data subject|customer records|passport)"),
        "HIPAA": re.compile(r"(\bphi\b|hipaa|patient|medical record|\bemr\b|\behr\b|diagnosis)"),
        "PCI-DSS": re.compile(r"(pci|cardholder|card number|\bcvv\b|\bpan\b|\b(?:\d[ -]?){15}\d\b)"),
        "SOX": re.compile(r"(\bsox\b|general ledger|financial report|quarterly earnings|journal entr)"),
    }

    EXPOSURE = re.compile(
        r"(exfil|unauthori[sz]ed access|data dump|dumped|upload(?:ed)? to|outbound transfer|"
        r"exported \d+|bulk export|leak|publicly accessible|s3 bucket)"
    )

    NOTIFICATION = {
        "GDPR": "Assess GDPR breach notification (72 hour supervisory authority deadline)",
        "HIPAA": "Start HIPAA breach risk assessment and notify the privacy officer",
        "PCI-DSS": "Engage the PCI forensic process and notify the acquiring bank",
        "SOX": "Review SOX financial controls affected by the incident",
    }

    def frameworks_in_scope(self, text: str) -> List[str]:
        return [name for name, pattern in self.FRAMEWORKS.items() if pattern.search(text)]

    async def evaluate(self, context: AgentContext):
        text = context.lower_text
        frameworks = self.frameworks_in_scope(text)
        exposed = bool(self.EXPOSURE.search(text))

        if frameworks and exposed:
            return self._finding(
                "true-positive",
                min(85, 60 + 10 * len(frameworks)),
                f"Regulated data ({', '.join(frameworks)}) shows signs of exposure",
                severity_hint="critical" if len(frameworks) > 1 else "high",
                key_findings=[f"{f} regulated data in scope" for f in frameworks],
                recommendations=[self.NOTIFICATION[f] for f in frameworks][:3] + ["Preserve evidence for regulators"],
            )
        if frameworks:
            return self._finding(
                "inconclusive",
                40,
                f"Regulated data ({', '.join(frameworks)}) referenced without exposure evidence",
                severity_hint="medium",
                key_findings=[f"{f} regulated data in scope" for f in frameworks],
                recommendations=["Confirm whether regulated data was accessed"],
            )
        return self._finding("inconclusive", 15, "No regulated data in scope")
