import re
from typing import Dict, List

from socflow.schemas.analysis import MitreTechnique
from socflow.services.agents.base import AgentContext, AnalysisAgent
from socflow.services.mitre_catalog import MitreCatalog, mitre_catalog


class MitreMappingAgent(AnalysisAgent):
    """
    Offline-first MITRE ATT&CK mapping; merges rule matches with techniques the
    submitter already declared.
    """

    name = "mitre-mapping"
    evidence_kind = "behavioral"
    focus = "MITRE ATT&CK mapping"

    RULES = [
        ("T1059.001", re.compile(r"powershell"), 80),
        ("T1027", re.compile(r"(-enc\b|-encodedcommand\b|frombase64string)"), 65),
        ("T1218.011", re.compile(r"\brundll32\b"), 80),
        ("T1112", re.compile(r"(\breg\s+(add|delete)\b|\breg\.exe\b)"), 70),
        ("T1547.001", re.compile(r"currentversion\\\\?run"), 75),
        ("T1071.004", re.compile(r"(\bdnscat2?\b|\biodine\b|dns\s*tunnel)"), 75),
        ("T1003", re.compile(r"(mimikatz|sekurlsa|lsass)"), 85),
        ("T1110", re.compile(r"(brute.?force|failed (login|logon|password)|event ?id[:= ]*4625)"), 70),
        ("T1021", re.compile(r"(psexec|\bwinrm\b|remote desktop|\brdp\b|\bsmb\b)"), 60),
        ("T1053", re.compile(r"\bschtasks\b|\bcrontab\b"), 65),
        ("T1047", re.compile(r"\bwmic\b"), 65),
        ("T1105", re.compile(r"(downloadstring|downloadfile|certutil.+-urlcache|\bwget\b|\bcurl\b)"), 60),
        ("T1486", re.compile(r"(vssadmin.+delete\s+shadows|ransom|\.encrypted\b)"), 85),
        ("T1190", re.compile(r"(\$\{jndi:|union\s+select|webshell)"), 75),
        ("T1566", re.compile(r"(phish|malicious attachment|macro enabled)"), 60),
        ("T1048", re.compile(r"(exfiltrat|large outbound transfer)"), 65),
    ]

    HIGH_IMPACT_TACTICS = {
        "credential-access", "impact", "exfiltration", "command-and-control", "lateral-movement",
    }

    def __init__(self, catalog: MitreCatalog = mitre_catalog, **kwargs):
        super().__init__(**kwargs)
        self.catalog = catalog

    def map_techniques(self, context: AgentContext) -> List[MitreTechnique]:
        text = context.lower_text
        unique: Dict[str, MitreTechnique] = {}
        for technique in context.draft.mitre_techniques:
            unique[technique.technique_id] = technique
        for technique_id, pattern, confidence in self.RULES:
            if technique_id not in unique and pattern.search(text):
                unique[technique_id] = self.catalog.technique(technique_id, confidence)
        return list(unique.values())

    async def evaluate(self, context: AgentContext):
        techniques = self.map_techniques(context)
        tactics = self.catalog.tactics_for(techniques)
        labels = [f"{t.technique_id} {t.name}" for t in techniques]

        if not techniques:
            return self._finding(
                "false-positive",
                55,
                "No ATT&CK techniques could be mapped",
                key_findings=["No technique matches"],
            )

        high_impact = sorted(self.HIGH_IMPACT_TACTICS.intersection(tactics))
        if high_impact or len(tactics) >= 2:
            return self._finding(
                "true-positive",
                min(90, 60 + 8 * len(techniques)),
                f"Techniques span tactics: {', '.join(tactics)}",
                severity_hint="high" if high_impact else "medium",
                key_findings=labels,
                recommendations=[f"Review detections for {t.technique_id}" for t in techniques[:3]],
                mitre_techniques=techniques,
            )
        return self._finding(
            "inconclusive",
            50,
            f"Single-tactic technique activity ({', '.join(tactics) or 'unknown'})",
            severity_hint="medium",
            key_findings=labels,
            mitre_techniques=techniques,
        )
