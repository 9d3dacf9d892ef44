from typing import List, Literal

from pydantic import BaseModel

Timeframe = Literal["24h", "7d", "30d"]


class RiskPoint(BaseModel):
    start: str
    end: str
    label: str
    risk_score: int
    incidents: int
    threats: int


class RiskProgression(BaseModel):
    timeframe: Timeframe
    window_start: str
    window_end: str
    bucket_seconds: int
    points: List[RiskPoint]
    current_risk_score: int
    change: int
    trend: Literal["increasing", "stable", "decreasing"]


class DashboardStats(BaseModel):
    active_threats: int
    today_incidents: int
    true_positives: int
    needs_review: int
    avg_confidence: int
    total_incidents: int


class PredictionFactor(BaseModel):
    name: str
    weight: int
    contribution: int
    trend: Literal["up", "down", "stable"]


class ThreatCategoryPrediction(BaseModel):
    category: str
    likelihood: int
    timeframe: str
    description: str
    impact: Literal["low", "medium", "high", "critical"]


class ThreatPrediction(BaseModel):
    overall_threat_level: int
    confidence: int
    risk_trend: Literal["increasing", "stable", "decreasing"]
    predictions: List[ThreatCategoryPrediction]
    factors: List[PredictionFactor]
    recommendations: List[str]
    generated_at: str
