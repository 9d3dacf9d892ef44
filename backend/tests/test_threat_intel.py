"""
Tests for threat-intel correlation, caching and reputation sources.
"""

import asyncio
from typing import List

import httpx
import pytest

from socflow.core.errors import ThreatIntelUnavailable
from socflow.schemas.analysis import Indicator, ThreatIndicator
from socflow.services.reputation_sources import OfflineReputationSource, OTXReputationSource, ReputationSource
from socflow.services.threat_intel import ThreatIntelCorrelator, aggregate_risk, threat_level_for

from conftest import MALICIOUS_IP


class CountingSource(ReputationSource):
    """Returns a fixed verdict after an optional gate; counts outbound calls."""

    name = "counting"

    def __init__(self, malicious: bool = True, gate: asyncio.Event = None):
        self.calls: List[str] = []
        self.malicious = malicious
        self.gate = gate

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        self.calls.append(indicator.value)
        if self.gate is not None:
            await self.gate.wait()
        return ThreatIndicator(
            type=indicator.type,
            value=indicator.value,
            malicious=self.malicious,
            threat_score=80 if self.malicious else 0,
            source=self.name,
        )


class UnavailableSource(ReputationSource):
    name = "down"

    def __init__(self):
        self.calls = 0

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        self.calls += 1
        raise ThreatIntelUnavailable(indicator.value, "rate limited", rate_limited=True)


class SlowSource(ReputationSource):
    name = "slow"

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        await asyncio.sleep(5)
        raise AssertionError("unreachable")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


IP = Indicator(type="ip", value=MALICIOUS_IP)


# =============================================================================
# Correlator
# =============================================================================


class TestCorrelator:
    """Tests for cached, single-flight reputation lookups."""

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_outbound_call(self):
        gate = asyncio.Event()
        source = CountingSource(gate=gate)
        correlator = ThreatIntelCorrelator(source=source, ttl_seconds=60, max_entries=10, timeout=1.0)

        waiters = [asyncio.ensure_future(correlator.lookup(IP)) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*waiters)

        assert source.calls == [MALICIOUS_IP]
        assert correlator.outbound_calls == 1
        assert all(r.malicious for r in results)

    @pytest.mark.asyncio
    async def test_cached_until_ttl_expires(self):
        clock = FakeClock()
        source = CountingSource()
        correlator = ThreatIntelCorrelator(source=source, ttl_seconds=60, max_entries=10, clock=clock)

        await correlator.lookup(IP)
        clock.now += 59
        await correlator.lookup(IP)
        assert len(source.calls) == 1

        clock.now += 2
        await correlator.lookup(IP)
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self):
        source = CountingSource()
        correlator = ThreatIntelCorrelator(source=source, ttl_seconds=60, max_entries=2)
        for last_octet in range(1, 5):
            await correlator.lookup(Indicator(type="ip", value=f"45.33.32.{last_octet}"))
        assert len(correlator.cache) == 2

    @pytest.mark.asyncio
    async def test_unavailable_source_yields_unknown_and_is_not_cached(self):
        source = UnavailableSource()
        correlator = ThreatIntelCorrelator(source=source, ttl_seconds=60, max_entries=10)

        first = await correlator.lookup(IP)
        second = await correlator.lookup(IP)

        assert first.status == "unknown"
        assert first.malicious is None
        assert first.error == "rate limited"
        assert source.calls == 2
        assert second.status == "unknown"

    @pytest.mark.asyncio
    async def test_timeout_yields_unknown(self):
        correlator = ThreatIntelCorrelator(source=SlowSource(), ttl_seconds=60, max_entries=10, timeout=0.01)
        result = await correlator.lookup(IP)
        assert result.status == "unknown"
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_correlate_builds_report(self, reputation_source):
        correlator = ThreatIntelCorrelator(source=reputation_source)
        report = await correlator.correlate([IP, Indicator(type="domain", value="cdn.partner.net")])

        assert report.malicious_count == 1
        assert report.unknown_count == 0
        # 0.6 * (75 + 0) / 2 + 40 * 0.5
        assert report.risk_score == 42
        assert report.threat_level == "medium"
        assert any(MALICIOUS_IP in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_correlate_without_indicators(self, reputation_source):
        report = await ThreatIntelCorrelator(source=reputation_source).correlate([])
        assert report.risk_score == 0
        assert report.indicators == []


# =============================================================================
# Risk scoring
# =============================================================================


class TestRiskScore:
    """Tests for the aggregate risk score."""

    def _indicator(self, score: int, malicious: bool) -> ThreatIndicator:
        return ThreatIndicator(type="ip", value="45.33.32.156", malicious=malicious, threat_score=score)

    def test_monotonic_in_threat_score(self):
        scores = [aggregate_risk([self._indicator(s, False), self._indicator(10, False)]) for s in (0, 20, 50, 90)]
        assert scores == sorted(scores)

    def test_monotonic_in_malicious_ratio(self):
        sets = [
            [self._indicator(50, m) for m in flags]
            for flags in ([False, False, False], [True, False, False], [True, True, False], [True, True, True])
        ]
        risks = [aggregate_risk(s) for s in sets]
        assert risks == sorted(risks)
        assert risks[0] < risks[-1]

    def test_capped_at_100(self):
        assert aggregate_risk([self._indicator(100, True)] * 3) == 100

    def test_threat_levels(self):
        assert threat_level_for(85) == "critical"
        assert threat_level_for(60) == "high"
        assert threat_level_for(40) == "medium"
        assert threat_level_for(20) == "low"
        assert threat_level_for(5) == "informational"


# =============================================================================
# Reputation sources
# =============================================================================


class TestReputationSources:
    """Tests for the offline and OTX sources."""

    @pytest.mark.asyncio
    async def test_offline_lists(self):
        source = OfflineReputationSource(
            blocklist={"domains": ["evil-c2.net"]},
            allowlist={"domains": ["cdn.partner.net"]},
        )
        bad = await source.lookup(Indicator(type="domain", value="evil-c2.net"))
        good = await source.lookup(Indicator(type="domain", value="cdn.partner.net"))
        cve = await source.lookup(Indicator(type="cve", value="CVE-2021-44228"))

        assert bad.malicious is True and bad.threat_score == 75
        assert good.malicious is False
        assert cve.malicious is None and cve.threat_score == 40

    @pytest.mark.asyncio
    async def test_otx_lookup(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "reputation": -2,
                "country_name": "Germany",
                "pulse_info": {"count": 12, "pulses": [{"tags": ["tor", "c2"]}]},
            })

        source = OTXReputationSource(api_key="k", base_url="https://otx.test/api/v1",
                                     transport=httpx.MockTransport(handler))
        result = await source.lookup(IP)

        assert seen[0].url.path == f"/api/v1/indicators/IPv4/{MALICIOUS_IP}/general"
        assert seen[0].headers["X-OTX-API-KEY"] == "k"
        assert result.malicious is True
        assert result.threat_score == 54
        assert result.tags == ["tor", "c2"]
        assert result.country == "Germany"

    @pytest.mark.asyncio
    async def test_otx_rate_limit_raises(self):
        source = OTXReputationSource(
            api_key="k",
            base_url="https://otx.test/api/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(429)),
        )
        with pytest.raises(ThreatIntelUnavailable) as exc_info:
            await source.lookup(IP)
        assert exc_info.value.rate_limited
