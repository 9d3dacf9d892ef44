import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from socflow.schemas.analysis import MitreTechnique

logger = logging.getLogger(__name__)

TECHNIQUE_ID_RE = re.compile(r"^T\d{4}(\.\d{3})?$")

# Techniques the heuristic agents can emit. Names/tactics are overridden by the
# STIX bundle when MITRE_ENTERPRISE_JSON points to one.
_BUILTIN: Dict[str, Dict[str, Any]] = {
    "T1003": {"name": "OS Credential Dumping", "tactics": ["credential-access"]},
    "T1021": {"name": "Remote Services", "tactics": ["lateral-movement"]},
    "T1027": {"name": "Obfuscated Files or Information", "tactics": ["defense-evasion"]},
    "T1047": {"name": "Windows Management Instrumentation", "tactics": ["execution"]},
    "T1053": {"name": "Scheduled Task/Job", "tactics": ["execution", "persistence", "privilege-escalation"]},
    "T1059": {"name": "Command and Scripting Interpreter", "tactics": ["execution"]},
    "T1059.001": {"name": "PowerShell", "tactics": ["execution"]},
    "T1068": {"name": "Exploitation for Privilege Escalation", "tactics": ["privilege-escalation"]},
    "T1071": {"name": "Application Layer Protocol", "tactics": ["command-and-control"]},
    "T1071.004": {"name": "DNS", "tactics": ["command-and-control"]},
    "T1078": {"name": "Valid Accounts", "tactics": ["defense-evasion", "initial-access", "persistence"]},
    "T1105": {"name": "Ingress Tool Transfer", "tactics": ["command-and-control"]},
    "T1110": {"name": "Brute Force", "tactics": ["credential-access"]},
    "T1112": {"name": "Modify Registry", "tactics": ["defense-evasion"]},
    "T1190": {"name": "Exploit Public-Facing Application", "tactics": ["initial-access"]},
    "T1218.011": {"name": "Rundll32", "tactics": ["defense-evasion"]},
    "T1486": {"name": "Data Encrypted for Impact", "tactics": ["impact"]},
    "T1547.001": {"name": "Registry Run Keys / Startup Folder", "tactics": ["persistence", "privilege-escalation"]},
    "T1566": {"name": "Phishing", "tactics": ["initial-access"]},
    "T1571": {"name": "Non-Standard Port", "tactics": ["command-and-control"]},
    "T1048": {"name": "Exfiltration Over Alternative Protocol", "tactics": ["exfiltration"]},
}


class MitreCatalog:
    """
    Technique lookup backed by a small built-in table, optionally extended with
    an enterprise-attack.json STIX bundle.
    """

    def __init__(self, data_path: Optional[str] = None):
        self.data_path = data_path or os.getenv(
            "MITRE_ENTERPRISE_JSON",
            os.path.join("data", "mitre", "enterprise-attack.json")
        )
        self.loaded = False
        self.techniques: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in _BUILTIN.items()}

    def load(self) -> None:
        if self.loaded:
            return
        self.loaded = True
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, "r", encoding="utf-8") as f:
                bundle = json.load(f)
        except (OSError, ValueError):
            logger.warning("mitre bundle unreadable", extra={"path": self.data_path})
            return

        for obj in bundle.get("objects", []):
            if obj.get("type") != "attack-pattern" or obj.get("revoked"):
                continue
            technique_id = None
            for ref in obj.get("external_references", []) or []:
                if ref.get("source_name") == "mitre-attack" and ref.get("external_id"):
                    technique_id = ref.get("external_id")
                    break
            if not technique_id:
                continue
            tactics = sorted({
                p.get("phase_name")
                for p in obj.get("kill_chain_phases", []) or []
                if p.get("kill_chain_name") == "mitre-attack" and p.get("phase_name")
            })
            self.techniques[technique_id] = {"name": obj.get("name") or "Unknown Technique", "tactics": tactics}

    @staticmethod
    def is_technique_id(value: str) -> bool:
        return bool(TECHNIQUE_ID_RE.match((value or "").strip().upper()))

    def technique(self, technique_id: str, confidence: int = 0) -> MitreTechnique:
        self.load()
        tid = technique_id.strip().upper()
        details = self.techniques.get(tid) or self.techniques.get(tid.split(".")[0]) or {}
        return MitreTechnique(
            technique_id=tid,
            name=details.get("name") or "Unknown Technique",
            tactics=list(details.get("tactics") or []),
            confidence=int(max(0, min(100, confidence))),
        )

    def tactics_for(self, techniques: List[MitreTechnique]) -> List[str]:
        tactics = set()
        for t in techniques:
            tactics.update(t.tactics)
        return sorted(tactics)


mitre_catalog = MitreCatalog()
