import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from socflow.core.config import settings
from socflow.core.errors import ThreatIntelUnavailable
from socflow.schemas.analysis import Indicator, ThreatIndicator, ThreatIntelReport
from socflow.services.reputation_sources import ReputationSource, default_reputation_source

logger = logging.getLogger(__name__)


def threat_level_for(score: float) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    if score >= 20:
        return "low"
    return "informational"


def aggregate_risk(indicators: List[ThreatIndicator]) -> int:
    """
    Monotonic in both the malicious ratio and each indicator's threat score.
    Unknown indicators count as score 0 and not malicious.
    """
    if not indicators:
        return 0
    total = len(indicators)
    avg_score = sum(i.threat_score for i in indicators) / total
    malicious_ratio = sum(1 for i in indicators if i.malicious) / total
    return int(round(min(100.0, 0.6 * avg_score + 40.0 * malicious_ratio)))


class TTLCache:
    """Bounded TTL cache; entries expire lazily on read and oldest-first on overflow."""

    def __init__(self, ttl_seconds: float, max_entries: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.clock = clock
        self._data: "OrderedDict[str, Tuple[float, ThreatIndicator]]" = OrderedDict()

    def get(self, key: str) -> Optional[ThreatIndicator]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: ThreatIndicator) -> None:
        self._data[key] = (self.clock() + self.ttl_seconds, value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def __len__(self) -> int:
        return len(self._data)


class ThreatIntelCorrelator:
    def __init__(
        self,
        source: Optional[ReputationSource] = None,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source or default_reputation_source()
        self.timeout = timeout if timeout is not None else settings.THREAT_INTEL_TIMEOUT_SECONDS
        self.cache = TTLCache(
            ttl_seconds if ttl_seconds is not None else settings.THREAT_INTEL_CACHE_TTL_SECONDS,
            max_entries if max_entries is not None else settings.THREAT_INTEL_CACHE_MAX_ENTRIES,
            clock=clock,
        )
        self._inflight: Dict[str, asyncio.Task] = {}
        self.outbound_calls = 0

    async def _fetch(self, key: str, indicator: Indicator) -> ThreatIndicator:
        self.outbound_calls += 1
        try:
            result = await asyncio.wait_for(self.source.lookup(indicator), timeout=self.timeout)
        finally:
            self._inflight.pop(key, None)
        self.cache.set(key, result)
        return result

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        key = indicator.key
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, indicator))
            self._inflight[key] = task

        try:
            # shield so one cancelled waiter does not abort the shared lookup
            return await asyncio.shield(task)
        except asyncio.TimeoutError:
            logger.warning("threat intel timeout", extra={"indicator": indicator.value})
            return self._unknown(indicator, f"timed out after {self.timeout}s")
        except ThreatIntelUnavailable as exc:
            logger.warning(
                "threat intel unavailable",
                extra={"indicator": indicator.value, "reason": exc.reason, "rate_limited": exc.rate_limited}
            )
            return self._unknown(indicator, exc.reason)
        except Exception as exc:
            logger.exception("threat intel lookup error", extra={"indicator": indicator.value})
            return self._unknown(indicator, f"{type(exc).__name__}: {exc}")

    def _unknown(self, indicator: Indicator, reason: str) -> ThreatIndicator:
        return ThreatIndicator(
            type=indicator.type,
            value=indicator.value,
            status="unknown",
            malicious=None,
            threat_score=0,
            source=getattr(self.source, "name", "unknown"),
            error=reason,
        )

    async def correlate(self, indicators: List[Indicator]) -> ThreatIntelReport:
        if not indicators:
            return build_report([])
        results = await asyncio.gather(*(self.lookup(i) for i in indicators))
        return build_report(list(results))


def build_report(indicators: List[ThreatIndicator]) -> ThreatIntelReport:
    risk_score = aggregate_risk(indicators)
    malicious = [i for i in indicators if i.malicious]
    unknown = [i for i in indicators if i.status == "unknown"]
    return ThreatIntelReport(
        indicators=indicators,
        risk_score=risk_score,
        threat_level=threat_level_for(risk_score),
        malicious_count=len(malicious),
        unknown_count=len(unknown),
        summary=_summary(indicators, malicious, unknown),
        recommendations=_recommendations(indicators),
    )


def _summary(indicators: List[ThreatIndicator], malicious: List[ThreatIndicator], unknown: List[ThreatIndicator]) -> str:
    if not indicators:
        return "No indicators available for correlation."
    text = f"Analyzed {len(indicators)} indicators."
    if malicious:
        text += f" {len(malicious)} flagged malicious; immediate investigation recommended."
    else:
        text += " No known malicious activity detected."
    if unknown:
        text += f" Reputation unavailable for {len(unknown)}."
    return text


def _recommendations(indicators: List[ThreatIndicator]) -> List[str]:
    recs: List[str] = []
    bad_ips = [i for i in indicators if i.type == "ip" and i.malicious]
    bad_domains = [i for i in indicators if i.type in ("domain", "url") and i.malicious]
    bad_hashes = [i for i in indicators if i.type == "hash" and i.malicious]
    cves = [i for i in indicators if i.type == "cve"]

    if bad_ips:
        more = f" and {len(bad_ips) - 3} more" if len(bad_ips) > 3 else ""
        recs.append(f"Block malicious IPs at firewall: {', '.join(i.value for i in bad_ips[:3])}{more}")
        country = f" ({bad_ips[0].country})" if bad_ips[0].country else ""
        recs.append(f"Investigate connections to/from: {bad_ips[0].value}{country}")
    if bad_domains:
        recs.append(f"Add to DNS blacklist: {', '.join(i.value for i in bad_domains[:3])}")
    if bad_hashes:
        recs.append(f"Scan endpoints for file hash {bad_hashes[0].value[:16]}... ({len(bad_hashes)} total)")
        recs.append("Initiate EDR investigation for detected malware signatures")
    if cves:
        recs.append(f"Verify patches for: {', '.join(i.value for i in cves[:2])}")
    return recs
