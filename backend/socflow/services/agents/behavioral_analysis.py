import re
from typing import Dict

from socflow.services.agents.base import AgentContext, AnalysisAgent


class BehavioralAnalysisAgent(AnalysisAgent):
    """
    Maps activity onto behavioural threat vectors; several concurrent vectors
    indicate a real intrusion rather than an isolated anomaly.
    """

    name = "behavioral-analysis"
    evidence_kind = "behavioral"
    focus = "behavioural analysis"

    VECTORS: Dict[str, "re.Pattern[str]"] = {
        "persistence": re.compile(r"(persist|currentversion\\\\?run|schtasks /create|new service|startup folder)"),
        "lateralMovement": re.compile(r"(lateral|psexec|wmic /node|pass.the.hash|remote desktop)"),
        "exfiltration": re.compile(r"(exfil|large outbound transfer|upload to|rclone)"),
        "reconnaissance": re.compile(r"(recon|whoami|net user|net group|nltest|port scan|nmap)"),
        "credentialAccess": re.compile(r"(credential|mimikatz|lsass|brute|password spray|kerberoast)"),
        "privilegeEscalation": re.compile(r"(privilege escalation|runas|sudo su|uac bypass|token impersonation)"),
        "defenseEvasion": re.compile(r"(-enc\b|-encodedcommand|clear-eventlog|wevtutil cl|disable.+defender)"),
    }

    async def evaluate(self, context: AgentContext):
        text = context.lower_text
        vectors = [name for name, pattern in self.VECTORS.items() if pattern.search(text)]

        if len(vectors) >= 2:
            return self._finding(
                "true-positive",
                min(90, 55 + 10 * len(vectors)),
                f"{len(vectors)} concurrent threat vectors observed",
                severity_hint="critical" if len(vectors) >= 4 else "high",
                key_findings=vectors,
                recommendations=["Scope the intrusion across adjacent hosts", "Reset credentials of involved accounts"],
            )
        if vectors:
            return self._finding(
                "inconclusive",
                50,
                f"Isolated {vectors[0]} behaviour",
                severity_hint="medium",
                key_findings=vectors,
            )
        return self._finding(
            "false-positive",
            55,
            "No adversary behaviour vectors observed",
            severity_hint="low",
        )
