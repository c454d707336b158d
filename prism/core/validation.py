"""
Subject validation and normalization per analysis domain.
"""

import re
from typing import Dict, FrozenSet
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import tldextract

from prism.core.exceptions import RequestValidationError, SubjectValidationError
from prism.core.models import AnalysisRequest

# Network name -> EVM chain id
CHAIN_NETWORKS: Dict[str, int] = {
    "ethereum": 1,
    "polygon": 137,
    "bsc": 56,
    "arbitrum": 42161,
    "optimism": 10,
    "avalanche": 43114,
    "base": 8453,
}
WEB_DOMAIN = "web"
KNOWN_DOMAINS: FrozenSet[str] = frozenset(CHAIN_NETWORKS) | {WEB_DOMAIN}

_HEX_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
_TRACKING_PARAMS = {"ref", "gclid", "fbclid"}

# Offline extractor: uses the suffix list snapshot bundled with tldextract.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def is_chain_domain(domain: str) -> bool:
    return domain in CHAIN_NETWORKS


def normalize_address(subject: str) -> str:
    """Validate a chain address or hash and return it lower-cased."""
    if not _HEX_ADDRESS.match(subject):
        raise SubjectValidationError(
            "Subject must be 0x followed by 1-64 hexadecimal characters",
            details={"subject": subject},
        )
    return subject.lower()


def normalize_url(subject: str) -> str:
    """
    Validate a web subject and return its canonical URL.

    Bare host names get an https scheme. The host must have a registrable
    domain under a public suffix. Fragments, tracking parameters and trailing
    slashes are dropped.
    """
    candidate = subject if "://" in subject else f"https://{subject}"
    parts = urlsplit(candidate)

    if parts.scheme.lower() not in ("http", "https"):
        raise SubjectValidationError(
            "Only http and https URLs can be analyzed", details={"subject": subject}
        )

    host = (parts.hostname or "").lower()
    ext = _extract(host)
    if not host or not ext.domain or not ext.suffix:
        raise SubjectValidationError(
            "Subject is not a URL with a registrable domain", details={"subject": subject}
        )

    query_params = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in _TRACKING_PARAMS
    ]
    normalized_query = urlencode(query_params)

    return urlunsplit(
        (
            parts.scheme.lower(),
            parts.netloc.lower(),
            parts.path.rstrip("/"),
            normalized_query,
            "",
        )
    )


def validate_request(request: AnalysisRequest) -> AnalysisRequest:
    """
    Check a request's subject against its domain and return a normalized copy.

    Raises:
        RequestValidationError: unknown domain
        SubjectValidationError: subject malformed for the domain
    """
    if request.domain not in KNOWN_DOMAINS:
        raise RequestValidationError(
            f"Unknown domain '{request.domain}'",
            details={"domain": request.domain, "known": sorted(KNOWN_DOMAINS)},
        )

    if is_chain_domain(request.domain):
        subject = normalize_address(request.subject)
    else:
        subject = normalize_url(request.subject)

    if subject == request.subject:
        return request
    return request.model_copy(update={"subject": subject})
