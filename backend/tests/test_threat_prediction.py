"""
Tests for the threat prediction forecast.
"""

import json
import random
from datetime import timedelta
from types import SimpleNamespace

import pytest

from socflow.services.threat_prediction import predict_threats


def incident(id, created_at, severity="critical", classification="true-positive", confidence=90,
             techniques=(), iocs=(), log_data=""):
    return SimpleNamespace(
        id=id,
        created_at=created_at,
        severity=severity,
        classification=classification,
        confidence=confidence,
        mitre_techniques_json=json.dumps([{"technique_id": t, "name": t} for t in techniques]),
        iocs_json=json.dumps([{"type": "ip", "value": v} for v in iocs]),
        log_data=log_data,
    )


@pytest.fixture
def intrusion(fixed_now):
    """Four confirmed critical incidents over the last four days."""
    log = "failed login for admin from 10.0.0.5; password spray; file download"
    return [
        incident(
            f"i{n}",
            fixed_now - timedelta(days=n),
            techniques=(f"T10{n}0", f"T10{n}1"),
            iocs=("10.0.0.5",),
            log_data=log,
        )
        for n in range(1, 5)
    ]


class TestBaseline:
    def test_empty_population(self, fixed_now):
        prediction = predict_threats([], as_of=fixed_now)

        # only detection accuracy contributes: 100 * 20 / 100
        assert prediction.overall_threat_level == 20
        assert prediction.confidence == 50
        assert prediction.risk_trend == "stable"
        assert [p.category for p in prediction.predictions] == ["General Security Event"]
        assert len(prediction.recommendations) == 3
        assert prediction.generated_at == fixed_now.isoformat()

    def test_factor_weights(self, fixed_now):
        factors = predict_threats([], as_of=fixed_now).factors
        assert [(f.name, f.weight) for f in factors] == [
            ("Incident Volume", 25),
            ("High Severity Incidents", 30),
            ("Detection Accuracy", 20),
            ("Attack Technique Diversity", 15),
            ("Analysis Confidence", 10),
        ]


class TestActiveIntrusion:
    """Tests for a population of confirmed critical incidents."""

    def test_threat_level_and_confidence(self, intrusion, fixed_now):
        prediction = predict_threats(intrusion, as_of=fixed_now)
        factors = {f.name: f.contribution for f in prediction.factors}

        assert factors["High Severity Incidents"] == 100
        assert factors["Detection Accuracy"] == 100
        assert factors["Attack Technique Diversity"] == 80
        assert factors["Analysis Confidence"] == 90
        assert prediction.overall_threat_level == 100
        # 50 + 15 (this week) + 15 (classified) + 10 (mapped)
        assert prediction.confidence == 90

    def test_categories(self, intrusion, fixed_now):
        predictions = {p.category: p for p in predict_threats(intrusion, as_of=fixed_now).predictions}

        assert set(predictions) == {
            "Advanced Persistent Threat (APT)",
            "Lateral Movement Attack",
            "Data Exfiltration Attempt",
            "Credential Compromise",
            "Malware Deployment",
        }
        assert predictions["Advanced Persistent Threat (APT)"].likelihood == 95
        assert predictions["Advanced Persistent Threat (APT)"].impact == "critical"
        assert predictions["Lateral Movement Attack"].likelihood == 90
        assert predictions["Data Exfiltration Attempt"].likelihood == 85
        assert predictions["Credential Compromise"].likelihood == 80
        assert predictions["Malware Deployment"].likelihood == 75

    def test_recommendations_are_capped_and_unique(self, intrusion, fixed_now):
        recs = predict_threats(intrusion, as_of=fixed_now).recommendations
        assert len(recs) == 6
        assert len(set(recs)) == 6
        assert recs[0] == "Activate the incident response team and enhance monitoring"


class TestTrendAndDeterminism:
    def test_rising_severity_is_increasing(self, fixed_now):
        incidents = [
            incident(f"new{n}", fixed_now - timedelta(days=1, hours=n), severity="critical") for n in range(6)
        ] + [
            incident(f"old{n}", fixed_now - timedelta(days=8, hours=n), severity="low", classification="false-positive")
            for n in range(6)
        ]
        prediction = predict_threats(incidents, as_of=fixed_now)

        assert prediction.risk_trend == "increasing"
        severity = next(f for f in prediction.factors if f.name == "High Severity Incidents")
        assert severity.trend == "up"

    def test_order_independent(self, intrusion, fixed_now):
        shuffled = list(intrusion)
        random.Random(5).shuffle(shuffled)
        assert predict_threats(shuffled, as_of=fixed_now) == predict_threats(intrusion, as_of=fixed_now)

    def test_future_incidents_ignored(self, intrusion, fixed_now):
        later = incident("later", fixed_now + timedelta(days=1), techniques=("T1486",))
        assert predict_threats(intrusion + [later], as_of=fixed_now) == predict_threats(intrusion, as_of=fixed_now)
