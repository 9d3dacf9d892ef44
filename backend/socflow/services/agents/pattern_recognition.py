import re

from socflow.schemas.analysis import max_severity
from socflow.services.agents.base import AgentContext, AnalysisAgent, match_signals


class PatternRecognitionAgent(AnalysisAgent):
    """
    Scans log artifacts for known attack patterns and benign-activity markers.
    """

    name = "pattern-recognition"
    evidence_kind = "technical"
    focus = "log pattern recognition"

    SIGNALS = [
        ("Encoded PowerShell command", re.compile(r"(-enc\b|-encodedcommand\b|frombase64string)"), 30, "high"),
        ("PowerShell download cradle", re.compile(r"(downloadstring|downloadfile|invoke-webrequest|net\.webclient|\biwr\b)"), 25, "high"),
        ("Credential dumping tooling", re.compile(r"(mimikatz|sekurlsa|lsass\.dmp|procdump.+lsass)"), 35, "critical"),
        ("Living-off-the-land binary abuse", re.compile(r"(rundll32|regsvr32|certutil.+-urlcache|mshta)"), 20, "high"),
        ("Shadow copy deletion / ransom activity", re.compile(r"(vssadmin.+delete\s+shadows|ransom|\.locked\b|\.encrypted\b)"), 35, "critical"),
        ("Repeated authentication failures", re.compile(r"(failed (login|logon|password)|authentication failure|event ?id[:= ]*4625)"), 15, "medium"),
        ("Web attack payload", re.compile(r"(union\s+select|'\s*or\s+1=1|<script>|\.\./\.\./|\$\{jndi:)"), 25, "high"),
        ("Execution policy bypass", re.compile(r"(-executionpolicy\s+bypass|-ep\s+bypass|-nop\b|-windowstyle\s+hidden)"), 15, "medium"),
    ]

    BENIGN = re.compile(r"(scheduled maintenance|authorized (scan|test|change)|backup completed|change ticket|pentest approved)")

    async def evaluate(self, context: AgentContext):
        text = context.lower_text
        hits = match_signals(text, self.SIGNALS)
        score = min(100, sum(weight for _, weight, _ in hits))
        benign = bool(self.BENIGN.search(text))
        labels = [label for label, _, _ in hits]
        severity = max_severity(*[sev for _, _, sev in hits])

        if benign and score < 30:
            return self._finding(
                "false-positive",
                65,
                "Activity matches documented benign operations",
                severity_hint="low",
                key_findings=labels or ["Benign operational marker present"],
                recommendations=["Confirm the change ticket or scan authorisation"],
            )
        if score >= 25:
            return self._finding(
                "true-positive",
                min(95, 50 + score),
                f"{len(hits)} malicious log patterns detected",
                severity_hint=severity,
                key_findings=labels,
                recommendations=["Isolate the affected host", "Collect process tree and command line telemetry"],
            )
        if hits:
            return self._finding(
                "inconclusive",
                40 + score,
                "Weak attack patterns present",
                severity_hint=severity,
                key_findings=labels,
                recommendations=["Correlate with surrounding host activity"],
            )
        return self._finding(
            "false-positive",
            60,
            "No known attack patterns in log artifacts",
            severity_hint="low",
            key_findings=["No malicious patterns matched"],
        )
