import re

from socflow.schemas.analysis import max_severity
from socflow.services.agents.base import AgentContext, AnalysisAgent, match_signals


class NetworkAnalysisAgent(AnalysisAgent):
    """
    Network-level evidence: suspicious ports, tunnelling, beaconing and transfers.
    """

    name = "network-analysis"
    evidence_kind = "technical"
    focus = "network traffic analysis"

    SUSPICIOUS_PORTS = {4444, 1337, 31337, 6667, 5555, 8081, 9001}
    PORT_RE = re.compile(r"(?:port[=: ]+|dst_port[=: ]+|:)(\d{2,5})\b")

    SIGNALS = [
        ("DNS tunnelling indicators", re.compile(r"(\bdnscat2?\b|\biodine\b|dns\s*tunnel|txt record flood)"), 30, "high"),
        ("Periodic beaconing", re.compile(r"(beacon|callback every|heartbeat to external)"), 25, "high"),
        ("Large outbound transfer", re.compile(r"(bytes_out[=: ]+\d{7,}|large outbound transfer|exfiltrat)"), 25, "high"),
        ("Port scanning", re.compile(r"(port scan|nmap|masscan|syn scan)"), 15, "medium"),
        ("Tor usage", re.compile(r"(\btor\b|\.onion\b|tor exit)"), 20, "high"),
    ]

    async def evaluate(self, context: AgentContext):
        text = context.lower_text
        hits = match_signals(text, self.SIGNALS)
        ports = sorted({int(p) for p in self.PORT_RE.findall(text)} & self.SUSPICIOUS_PORTS)
        labels = [label for label, _, _ in hits]
        score = sum(weight for _, weight, _ in hits)
        if ports:
            labels.append(f"Connections on suspicious ports: {', '.join(map(str, ports))}")
            score += 25
        public_ips = [i for i in context.draft.iocs if i.type == "ip"]
        severity = max_severity(*[sev for _, _, sev in hits], "high" if ports else None)

        if score >= 25:
            return self._finding(
                "true-positive",
                min(90, 50 + score),
                "Network behaviour consistent with command-and-control or exfiltration",
                severity_hint=severity,
                key_findings=labels,
                recommendations=["Block the remote endpoints at the perimeter", "Capture full packet data for the host"],
            )
        if hits or public_ips:
            findings = labels or [f"{len(public_ips)} external IPs contacted"]
            return self._finding(
                "inconclusive",
                40 + score,
                "External connectivity without conclusive malicious traits",
                severity_hint=severity,
                key_findings=findings,
            )
        return self._finding(
            "inconclusive",
            25,
            "No network artefacts in the incident",
        )
