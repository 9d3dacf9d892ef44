import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Set

from socflow.schemas.risk import PredictionFactor, ThreatCategoryPrediction, ThreatPrediction
from socflow.services.ioc_extractor import is_private_ip
from socflow.services.risk_aggregator import _ensure_utc, _sorted

RECENT_DAYS = 30
WEEK = timedelta(days=7)

SEVERITY_SCORES = {"critical": 4, "high": 3, "medium": 2, "low": 1, "informational": 0}

# (name, weight); weights sum to 100
FACTORS = (
    ("Incident Volume", 25),
    ("High Severity Incidents", 30),
    ("Detection Accuracy", 20),
    ("Attack Technique Diversity", 15),
    ("Analysis Confidence", 10),
)

THREAT_LEVEL_RECOMMENDATIONS = (
    (80, [
        "Activate the incident response team and enhance monitoring",
        "Run threat hunting for advanced persistent threats",
        "Review security controls against the current threat landscape",
    ]),
    (60, [
        "Increase monitoring frequency and alert sensitivity",
        "Run security awareness training for high-risk user groups",
        "Review access controls and enforce least privilege",
    ]),
    (40, [
        "Maintain the current security posture with regular monitoring",
        "Update threat intelligence feeds and detection signatures",
        "Schedule routine security assessments and penetration tests",
    ]),
    (0, [
        "Continue baseline security monitoring",
        "Focus on preventive controls and user education",
        "Review and tune security tool configurations",
    ]),
)

CATEGORY_RECOMMENDATIONS = {
    "Advanced Persistent Threat (APT)": "Deploy behavioural analytics for long-running intrusions",
    "Lateral Movement Attack": "Segment the internal network and restrict east-west traffic",
    "Data Exfiltration Attempt": "Enable data loss prevention and monitor outbound data flows",
    "Credential Compromise": "Enforce multi-factor authentication and watch privileged accounts",
    "Malware Deployment": "Update endpoint protection and enforce application allow-listing",
}

FACTOR_RECOMMENDATIONS = {
    "Incident Volume": "Investigate the root cause of the rising incident volume",
    "High Severity Incidents": "Prioritise remediation of critical vulnerabilities",
    "Attack Technique Diversity": "Broaden controls to cover the wider set of attack techniques",
}

_IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_DATA_RE = re.compile(r"(data|file|download)")
_AUTH_RE = re.compile(r"(login|auth|password)")


def _json_list(raw: Optional[str]) -> List[Any]:
    try:
        value = json.loads(raw) if raw else []
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def _techniques(incident) -> Set[str]:
    ids = set()
    for item in _json_list(getattr(incident, "mitre_techniques_json", None)):
        technique_id = item.get("technique_id") if isinstance(item, dict) else item
        if technique_id:
            ids.add(str(technique_id))
    return ids


def _log_text(incident) -> str:
    return (getattr(incident, "log_data", None) or "").lower()


def _touches_internal_network(incident) -> bool:
    values = [
        item.get("value") if isinstance(item, dict) else item
        for item in _json_list(getattr(incident, "iocs_json", None))
    ]
    values += _IPV4_RE.findall(_log_text(incident))
    return any(is_private_ip(str(v)) for v in values if v)


def _severity_score(incidents: Sequence) -> float:
    if not incidents:
        return 0.0
    return sum(SEVERITY_SCORES.get(str(i.severity or "").lower(), 0) for i in incidents) / len(incidents)


def _direction(diff: float, tolerance: float) -> str:
    if abs(diff) < tolerance:
        return "stable"
    return "up" if diff > 0 else "down"


def _window_trend(incidents: Sequence, metric, tolerance: float) -> str:
    """Compares the six newest incidents with the six before them."""
    if len(incidents) < 6:
        return "stable"
    recent, older = incidents[-6:], incidents[-12:-6]
    return _direction(metric(recent) - (metric(older) if older else 0.0), tolerance)


def _rate(incidents: Sequence, predicate) -> float:
    return sum(1 for i in incidents if predicate(i)) / max(1, len(incidents))


def _factors(known: Sequence, recent: Sequence, as_of: datetime) -> List[PredictionFactor]:
    oldest = _ensure_utc(known[0].created_at) if known else as_of
    weeks = max(1, int((as_of - oldest) / WEEK))
    weekly_avg = len(known) / weeks
    recent_weekly = len(recent) / (RECENT_DAYS / 7)

    def confidence_of(items):
        return sum(i.confidence or 0 for i in items) / max(1, len(items))

    contributions = {
        "Incident Volume": (
            min(95.0, recent_weekly / max(1.0, weekly_avg) * 50),
            "up" if recent_weekly > weekly_avg else "down" if recent_weekly < weekly_avg else "stable",
        ),
        "High Severity Incidents": (
            _rate(recent, lambda i: i.severity in ("critical", "high")) * 100,
            _window_trend(known, _severity_score, 0.3),
        ),
        "Detection Accuracy": (
            100 - _rate(recent, lambda i: i.classification == "false-positive") * 100,
            _window_trend(known, lambda items: _rate(items, lambda i: i.classification == "false-positive"), 0.1),
        ),
        "Attack Technique Diversity": (
            min(90, 10 * len(set().union(*[_techniques(i) for i in recent]))),
            _window_trend(known, lambda items: _rate(items, _techniques), 0.1),
        ),
        "Analysis Confidence": (
            confidence_of(recent),
            _window_trend(known, confidence_of, 5),
        ),
    }
    return [
        PredictionFactor(name=name, weight=weight, contribution=int(round(contributions[name][0])),
                         trend=contributions[name][1])
        for name, weight in FACTORS
    ]


def _threat_level(factors: List[PredictionFactor], recent: Sequence, as_of: datetime) -> float:
    weighted = sum(f.contribution * f.weight for f in factors) / sum(f.weight for f in factors)
    modifier = 1.0
    if any(i.severity == "critical" and _ensure_utc(i.created_at) > as_of - WEEK for i in recent):
        modifier += 0.2
    if _rate(recent, lambda i: i.classification == "true-positive") > 0.7:
        modifier += 0.15
    return min(100.0, weighted * modifier)


def _risk_trend(known: Sequence, as_of: datetime) -> str:
    if len(known) < 10:
        return "stable"
    last_week = [i for i in known if _ensure_utc(i.created_at) > as_of - WEEK]
    previous_week = [i for i in known if as_of - 2 * WEEK < _ensure_utc(i.created_at) <= as_of - WEEK]
    diff = _severity_score(last_week) - _severity_score(previous_week)
    return {"up": "increasing", "down": "decreasing", "stable": "stable"}[_direction(diff, 0.5)]


def _categories(recent: Sequence) -> List[ThreatCategoryPrediction]:
    predictions = []

    complexity = len(set().union(*[_techniques(i) for i in recent]))
    if complexity > 3:
        predictions.append(ThreatCategoryPrediction(
            category="Advanced Persistent Threat (APT)",
            likelihood=min(95, 40 + complexity * 10),
            timeframe="7-14 days",
            description="Multi-stage activity across many ATT&CK techniques suggests a persistent intruder.",
            impact="critical" if complexity > 5 else "high",
        ))

    internal = sum(1 for i in recent if _touches_internal_network(i))
    if internal > 2:
        predictions.append(ThreatCategoryPrediction(
            category="Lateral Movement Attack",
            likelihood=min(90, 30 + internal * 15),
            timeframe="3-7 days",
            description="Repeated activity against internal addresses suggests movement through the network.",
            impact="high",
        ))

    data = sum(1 for i in recent if _DATA_RE.search(_log_text(i)))
    if data > 1:
        predictions.append(ThreatCategoryPrediction(
            category="Data Exfiltration Attempt",
            likelihood=min(85, 25 + data * 20),
            timeframe="1-5 days",
            description="File and data access patterns suggest possible exfiltration.",
            impact="critical",
        ))

    auth = sum(1 for i in recent if _AUTH_RE.search(_log_text(i)))
    if auth > 2:
        predictions.append(ThreatCategoryPrediction(
            category="Credential Compromise",
            likelihood=min(80, 35 + auth * 12),
            timeframe="2-6 days",
            description="Multiple authentication anomalies suggest compromised credentials.",
            impact="high",
        ))

    confirmed = sum(
        1 for i in recent
        if i.classification == "true-positive" and i.severity in ("critical", "high")
    )
    if confirmed > 1:
        predictions.append(ThreatCategoryPrediction(
            category="Malware Deployment",
            likelihood=min(75, 20 + confirmed * 18),
            timeframe="1-3 days",
            description="A run of confirmed high-severity threats suggests active malware.",
            impact="high",
        ))

    if not predictions:
        predictions.append(ThreatCategoryPrediction(
            category="General Security Event",
            likelihood=35,
            timeframe="7-14 days",
            description="Baseline monitoring shows normal threat levels.",
            impact="medium",
        ))
    return predictions[:5]


def _confidence(known: Sequence, as_of: datetime) -> float:
    confidence = 50.0
    if len(known) > 20:
        confidence += 20
    elif len(known) > 10:
        confidence += 10
    elif len(known) > 5:
        confidence += 5

    this_week = sum(1 for i in known if _ensure_utc(i.created_at) > as_of - WEEK)
    if this_week > 3:
        confidence += 15
    elif this_week > 1:
        confidence += 10

    confidence += _rate(known, lambda i: i.classification not in (None, "unset")) * 15
    confidence += _rate(known, _techniques) * 10
    return min(95.0, confidence)


def _recommendations(level: float, predictions, factors) -> List[str]:
    recs: List[str] = []
    for floor, items in THREAT_LEVEL_RECOMMENDATIONS:
        if level >= floor:
            recs.extend(items)
            break
    recs.extend(CATEGORY_RECOMMENDATIONS[p.category] for p in predictions if p.category in CATEGORY_RECOMMENDATIONS)
    recs.extend(
        FACTOR_RECOMMENDATIONS[f.name] for f in factors
        if f.contribution > 70 and f.trend == "up" and f.name in FACTOR_RECOMMENDATIONS
    )
    unique: List[str] = []
    for rec in recs:
        if rec not in unique:
            unique.append(rec)
    return unique[:6]


def predict_threats(incidents: Sequence, as_of: Optional[datetime] = None) -> ThreatPrediction:
    """
    Read-only forecast over the incident population known at as_of.
    Incidents created after as_of, or without a timestamp, are ignored.
    """
    as_of = _ensure_utc(as_of) or datetime.now(timezone.utc)
    known = [i for i in _sorted(incidents) if _ensure_utc(i.created_at) and _ensure_utc(i.created_at) <= as_of]
    recent = [i for i in known if _ensure_utc(i.created_at) >= as_of - timedelta(days=RECENT_DAYS)]

    factors = _factors(known, recent, as_of)
    level = _threat_level(factors, recent, as_of)
    predictions = _categories(recent)
    return ThreatPrediction(
        overall_threat_level=int(round(level)),
        confidence=int(round(_confidence(known, as_of))),
        risk_trend=_risk_trend(known, as_of),
        predictions=predictions,
        factors=factors,
        recommendations=_recommendations(level, predictions, factors),
        generated_at=as_of.isoformat(),
    )
