from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from socflow.database.db import get_db
from socflow.models.incident import Incident
from socflow.schemas.risk import DashboardStats, RiskProgression, ThreatPrediction
from socflow.services.risk_aggregator import TIMEFRAMES, compute_dashboard_stats, compute_risk_progression
from socflow.services.threat_prediction import predict_threats

router = APIRouter()


@router.get("/risk-progression", response_model=RiskProgression)
def get_risk_progression(
    timeframe: str = Query("24h", pattern="^(24h|7d|30d)$"),
    db: Session = Depends(get_db),
):
    """
    Risk curve over the requested window, derived from stored incidents.
    """
    now = datetime.now(timezone.utc)
    bucket_seconds, count = TIMEFRAMES[timeframe]
    since = now - timedelta(seconds=bucket_seconds * (count + 1))
    rows = db.query(Incident).filter(Incident.created_at >= since).all()
    return compute_risk_progression(rows, timeframe, as_of=now)


@router.get("/dashboard-stats", response_model=DashboardStats)
def get_dashboard_stats(db: Session = Depends(get_db)):
    return compute_dashboard_stats(db.query(Incident).all(), as_of=datetime.now(timezone.utc))


@router.get("/threat-prediction", response_model=ThreatPrediction)
def get_threat_prediction(db: Session = Depends(get_db)):
    """
    Forecast of likely threat categories from the stored incident population.
    """
    return predict_threats(db.query(Incident).all(), as_of=datetime.now(timezone.utc))
