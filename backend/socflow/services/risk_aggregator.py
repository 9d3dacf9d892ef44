from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from socflow.schemas.risk import DashboardStats, RiskPoint, RiskProgression

# timeframe -> (bucket seconds, bucket count)
TIMEFRAMES: Dict[str, tuple] = {
    "24h": (3600, 24),
    "7d": (86400, 7),
    "30d": (86400, 30),
}

SEVERITY_WEIGHTS = {
    "critical": 1.0,
    "high": 0.75,
    "medium": 0.5,
    "low": 0.25,
    "informational": 0.1,
}
UNKNOWN_SEVERITY_WEIGHT = 0.5

CLASSIFICATION_WEIGHTS = {
    "true-positive": 1.0,
    "needs-review": 0.6,
    "unset": 0.5,
    "false-positive": 0.1,
}

TREND_TOLERANCE = 5


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _floor(ts: datetime, bucket_seconds: int) -> datetime:
    epoch = int(ts.timestamp())
    return datetime.fromtimestamp(epoch - (epoch % bucket_seconds), tz=timezone.utc)


def contribution(severity: Optional[str], classification: Optional[str]) -> float:
    sev = SEVERITY_WEIGHTS.get(str(severity or "").lower(), UNKNOWN_SEVERITY_WEIGHT)
    cls = CLASSIFICATION_WEIGHTS.get(str(classification or "unset").lower(), CLASSIFICATION_WEIGHTS["unset"])
    return 100.0 * sev * cls


def is_threat(severity: Optional[str], classification: Optional[str]) -> bool:
    if classification == "false-positive":
        return False
    return classification == "true-positive" or severity in ("high", "critical")


def _sorted(incidents: Iterable) -> List:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(incidents, key=lambda i: (_ensure_utc(i.created_at) or epoch, str(i.id)))


def compute_risk_progression(incidents: Sequence, timeframe: str = "24h", as_of: Optional[datetime] = None) -> RiskProgression:
    """
    Buckets incidents into a fixed window ending at the bucket containing as_of.
    The same incidents and as_of always give the same curve, whatever the input order.
    """
    if timeframe not in TIMEFRAMES:
        raise ValueError(f"unsupported timeframe '{timeframe}'")
    bucket_seconds, count = TIMEFRAMES[timeframe]
    as_of = _ensure_utc(as_of) or datetime.now(timezone.utc)
    window_end = _floor(as_of, bucket_seconds) + timedelta(seconds=bucket_seconds)
    window_start = window_end - timedelta(seconds=bucket_seconds * count)

    buckets: List[List] = [[] for _ in range(count)]
    for incident in _sorted(incidents):
        created = _ensure_utc(incident.created_at)
        if created is None or created < window_start or created >= window_end:
            continue
        index = int((created - window_start).total_seconds() // bucket_seconds)
        buckets[index].append(incident)

    points: List[RiskPoint] = []
    for index, members in enumerate(buckets):
        start = window_start + timedelta(seconds=bucket_seconds * index)
        end = start + timedelta(seconds=bucket_seconds)
        scores = [contribution(i.severity, i.classification) for i in members]
        points.append(RiskPoint(
            start=start.isoformat(),
            end=end.isoformat(),
            label=start.strftime("%H:00") if bucket_seconds < 86400 else start.strftime("%b %d"),
            risk_score=int(round(sum(scores) / len(scores))) if scores else 0,
            incidents=len(members),
            threats=sum(1 for i in members if is_threat(i.severity, i.classification)),
        ))

    # recency weighted: bucket i carries weight i + 1
    active = [(index + 1, p.risk_score) for index, p in enumerate(points) if p.incidents]
    total_weight = sum(w for w, _ in active)
    current = int(round(sum(w * s for w, s in active) / total_weight)) if total_weight else 0

    populated = [p.risk_score for p in points if p.incidents]
    change = populated[-1] - populated[-2] if len(populated) >= 2 else 0
    if change > TREND_TOLERANCE:
        trend = "increasing"
    elif change < -TREND_TOLERANCE:
        trend = "decreasing"
    else:
        trend = "stable"

    return RiskProgression(
        timeframe=timeframe,
        window_start=window_start.isoformat(),
        window_end=window_end.isoformat(),
        bucket_seconds=bucket_seconds,
        points=points,
        current_risk_score=current,
        change=change,
        trend=trend,
    )


def compute_dashboard_stats(incidents: Sequence, as_of: Optional[datetime] = None) -> DashboardStats:
    as_of = _ensure_utc(as_of) or datetime.now(timezone.utc)
    day_start = _floor(as_of, 86400)
    incidents = _sorted(incidents)

    active_threats = sum(
        1 for i in incidents
        if i.status != "closed" and is_threat(i.severity, i.classification)
    )
    today = sum(
        1 for i in incidents
        if (_ensure_utc(i.created_at) or day_start - timedelta(days=1)) >= day_start
    )
    confidences = [i.confidence for i in incidents if i.confidence is not None]
    return DashboardStats(
        active_threats=active_threats,
        today_incidents=today,
        true_positives=sum(1 for i in incidents if i.classification == "true-positive"),
        needs_review=sum(1 for i in incidents if i.classification == "needs-review"),
        avg_confidence=int(round(sum(confidences) / len(confidences))) if confidences else 0,
        total_incidents=len(incidents),
    )
