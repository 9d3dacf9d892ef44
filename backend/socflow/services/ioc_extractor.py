import ipaddress
import re
from typing import List, Optional

from socflow.schemas.analysis import Indicator


"""
IOC extraction and classification for incident log artifacts.
Private addresses, file names and well-known benign domains are skipped.
"""

_IP_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_URL_RE = re.compile(r"https?://[^\s<>\"'{}|\\^`\[\]]+", re.IGNORECASE)
_DOMAIN_RE = re.compile(r"\b(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}\b")
_HASH_RE = re.compile(r"\b(?:[a-fA-F0-9]{64}|[a-fA-F0-9]{40}|[a-fA-F0-9]{32})\b")
_CVE_RE = re.compile(r"\bCVE-\d{4}-\d{4,7}\b", re.IGNORECASE)

_FILE_SUFFIXES = {
    "exe", "dll", "ps1", "bat", "cmd", "sys", "log", "txt", "vbs", "js", "msi",
    "zip", "tmp", "dat", "ini", "json", "xml", "csv", "py", "sh", "local",
}
_COMMON_DOMAINS = (
    "localhost", "example.com", "test.com", "google.com",
    "microsoft.com", "windows.com", "apple.com", "amazon.com",
)


def _unique(items: List[Indicator]) -> List[Indicator]:
    seen = set()
    result = []
    for item in items:
        if item.key not in seen:
            seen.add(item.key)
            result.append(item)
    return result


def _is_valid_ipv4(ip: str) -> bool:
    try:
        ipaddress.IPv4Address(ip)
        return True
    except ValueError:
        return False


def is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def _looks_like_file(domain: str) -> bool:
    return domain.rsplit(".", 1)[-1].lower() in _FILE_SUFFIXES


def _is_common_domain(domain: str) -> bool:
    lower = domain.lower()
    return any(lower == d or lower.endswith("." + d) for d in _COMMON_DOMAINS)


def classify_indicator(value: str) -> Optional[str]:
    """Returns the IOC type for a single declared indicator value, or None."""
    v = (value or "").strip()
    if not v:
        return None
    if _CVE_RE.fullmatch(v):
        return "cve"
    if _URL_RE.fullmatch(v):
        return "url"
    if _IP_RE.fullmatch(v):
        return "ip" if _is_valid_ipv4(v) else None
    if _HASH_RE.fullmatch(v):
        return "hash"
    if _DOMAIN_RE.fullmatch(v) and not _looks_like_file(v):
        return "domain"
    return None


def normalize_value(ioc_type: str, value: str) -> str:
    v = value.strip()
    if ioc_type == "cve":
        return v.upper()
    if ioc_type in ("domain", "hash"):
        return v.lower()
    return v


def extract_indicators(text: str) -> List[Indicator]:
    text = text or ""
    found: List[Indicator] = []

    urls = _URL_RE.findall(text)
    for url in urls:
        found.append(Indicator(type="url", value=url.rstrip(".,;)")))

    for ip in _IP_RE.findall(text):
        if _is_valid_ipv4(ip) and not is_private_ip(ip):
            found.append(Indicator(type="ip", value=ip))

    stripped = _URL_RE.sub(" ", text)
    for domain in _DOMAIN_RE.findall(stripped):
        if re.fullmatch(r"\d+(?:\.\d+){3}", domain):
            continue
        if _looks_like_file(domain) or _is_common_domain(domain):
            continue
        found.append(Indicator(type="domain", value=domain.lower()))

    for h in _HASH_RE.findall(text):
        found.append(Indicator(type="hash", value=h.lower()))

    for cve in _CVE_RE.findall(text):
        found.append(Indicator(type="cve", value=cve.upper()))

    return _unique(found)


def merge_indicators(declared: List[Indicator], extracted: List[Indicator]) -> List[Indicator]:
    return _unique(list(declared) + list(extracted))
