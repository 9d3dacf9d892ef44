import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from socflow.core.config import settings
from socflow.core.errors import ThreatIntelUnavailable
from socflow.schemas.analysis import Indicator, ThreatIndicator

logger = logging.getLogger(__name__)


class ReputationSource:
    """
    External reputation capability queried once per IOC on cache miss.
    Implementations raise ThreatIntelUnavailable on failure or rate limiting.
    """

    name: str = "base"

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        raise NotImplementedError()


def calculate_threat_score(data: Dict[str, Any]) -> int:
    score = 0
    pulse_count = int((data.get("pulse_info") or {}).get("count") or 0)
    if pulse_count:
        score += min(pulse_count * 2, 50)
    reputation = data.get("reputation")
    if isinstance(reputation, (int, float)) and reputation < 0:
        score += 30
    if data.get("validation"):
        score += 20
    return min(score, 100)


class OTXReputationSource(ReputationSource):
    """AlienVault OTX indicator lookups."""

    name = "otx"

    _SECTIONS = {
        "ip": "IPv4",
        "domain": "domain",
        "url": "url",
        "hash": "file",
        "cve": "cve",
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.OTX_API_KEY
        self.base_url = (base_url or settings.OTX_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.THREAT_INTEL_TIMEOUT_SECONDS
        self.transport = transport

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        section = self._SECTIONS[indicator.type]
        url = f"{self.base_url}/indicators/{section}/{indicator.value}/general"
        headers = {"X-OTX-API-KEY": self.api_key} if self.api_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise ThreatIntelUnavailable(indicator.value, f"{type(exc).__name__}: {exc}") from exc

        if r.status_code == 429:
            raise ThreatIntelUnavailable(indicator.value, "rate limited", rate_limited=True)
        if r.status_code != 200:
            raise ThreatIntelUnavailable(indicator.value, f"OTX returned HTTP {r.status_code}")

        try:
            data = r.json()
        except ValueError as exc:
            raise ThreatIntelUnavailable(indicator.value, "OTX returned invalid JSON") from exc

        pulse_info = data.get("pulse_info") or {}
        pulses = pulse_info.get("pulses") or []
        pulse_count = int(pulse_info.get("count") or 0)
        tags: List[str] = []
        for pulse in pulses[:5]:
            for tag in pulse.get("tags", []) or []:
                if tag not in tags:
                    tags.append(tag)

        asn = data.get("asn")
        return ThreatIndicator(
            type=indicator.type,
            value=indicator.value,
            malicious=pulse_count > 0,
            reputation=data.get("reputation") if isinstance(data.get("reputation"), int) else None,
            threat_score=calculate_threat_score(data),
            pulse_count=pulse_count,
            tags=tags[:10],
            country=data.get("country_name") or data.get("country_code"),
            organization=str(asn) if asn else None,
            source=self.name,
        )


class OfflineReputationSource(ReputationSource):
    """
    Local allow/block list reputation.
    Defaults to unknown when no evidence exists.
    """

    name = "offline"

    _DEFAULT = {"ips": [], "domains": [], "urls": [], "hashes": [], "cves": []}
    _KEYS = {"ip": "ips", "domain": "domains", "url": "urls", "hash": "hashes", "cve": "cves"}

    def __init__(
        self,
        blocklist: Optional[Dict[str, List[str]]] = None,
        allowlist: Optional[Dict[str, List[str]]] = None,
        blocklist_path: Optional[str] = None,
        allowlist_path: Optional[str] = None,
    ):
        self.blocklist = self._normalize(blocklist) if blocklist is not None else self._load(
            blocklist_path or settings.IOC_BLOCKLIST_PATH
        )
        self.allowlist = self._normalize(allowlist) if allowlist is not None else self._load(
            allowlist_path or settings.IOC_ALLOWLIST_PATH
        )

    def _normalize(self, data: Dict[str, List[str]]) -> Dict[str, set]:
        return {k: {str(v).lower() for v in data.get(k, []) or []} for k in self._DEFAULT}

    def _load(self, path: str) -> Dict[str, set]:
        if not path or not os.path.exists(path):
            return self._normalize(self._DEFAULT)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return self._normalize(json.load(f))
        except (OSError, ValueError):
            logger.warning("ioc list unreadable", extra={"path": path})
            return self._normalize(self._DEFAULT)

    async def lookup(self, indicator: Indicator) -> ThreatIndicator:
        key = self._KEYS[indicator.type]
        value = indicator.value.lower()
        if value in self.blocklist[key]:
            return ThreatIndicator(
                type=indicator.type,
                value=indicator.value,
                malicious=True,
                reputation=-1,
                threat_score=75,
                tags=["blocklist"],
                source="offline_blocklist",
            )
        if value in self.allowlist[key]:
            return ThreatIndicator(
                type=indicator.type,
                value=indicator.value,
                malicious=False,
                reputation=0,
                threat_score=0,
                source="offline_allowlist",
            )
        if indicator.type == "cve":
            return ThreatIndicator(
                type="cve",
                value=indicator.value,
                malicious=None,
                threat_score=40,
                tags=["cve"],
                source="cve_detected",
            )
        return ThreatIndicator(
            type=indicator.type,
            value=indicator.value,
            malicious=False,
            threat_score=0,
            source="offline_no_match",
        )


def default_reputation_source() -> ReputationSource:
    if settings.OTX_API_KEY:
        return OTXReputationSource()
    return OfflineReputationSource()
