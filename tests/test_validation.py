"""Test suite for request models and subject validation."""

import pytest
from pydantic import ValidationError

from prism.core.exceptions import RequestValidationError, SubjectValidationError
from prism.core.models import AnalysisRequest, Depth
from prism.core.validation import (
    CHAIN_NETWORKS,
    KNOWN_DOMAINS,
    normalize_address,
    normalize_url,
    validate_request,
)


class TestAnalysisRequest:
    """Test request parsing."""

    def test_camel_case_payload(self):
        """Test wire-format keys are accepted."""
        request = AnalysisRequest.from_payload(
            {
                "subject": " 0xABC ",
                "domain": "Ethereum",
                "capabilities": ["Tokens", "nfts", "tokens"],
                "depth": "detailed",
                "timeframe": "7D",
                "requesterId": "user-1",
            }
        )
        assert request.subject == "0xABC"
        assert request.domain == "ethereum"
        assert request.capabilities == frozenset({"tokens", "nfts"})
        assert request.sorted_capabilities == ("nfts", "tokens")
        assert request.depth == Depth.DETAILED
        assert request.timeframe == "7d"
        assert request.requester_id == "user-1"

    def test_comma_separated_capabilities(self):
        """Test capabilities may be given as a comma string."""
        request = AnalysisRequest.from_payload(
            {"subject": "0x1", "domain": "ethereum", "capabilities": "tokens, labels"}
        )
        assert request.capabilities == frozenset({"tokens", "labels"})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"capabilities": []},
            {"capabilities": [" "]},
            {"depth": "extreme"},
            {"timeframe": "1y"},
            {"subject": "   "},
        ],
    )
    def test_malformed_payloads_rejected(self, overrides):
        """Test malformed fields raise a rejection with the invalid_request code."""
        payload = {"subject": "0x1", "domain": "ethereum", "capabilities": ["tokens"]}
        payload.update(overrides)
        with pytest.raises(RequestValidationError) as exc_info:
            AnalysisRequest.from_payload(payload)
        assert exc_info.value.code == "invalid_request"
        assert exc_info.value.details["errors"]

    def test_requests_are_immutable(self):
        """Test requests cannot be changed after creation."""
        request = AnalysisRequest(subject="0x1", domain="ethereum", capabilities=["tokens"])
        with pytest.raises(ValidationError):
            request.subject = "0x2"


class TestChainSubjects:
    """Test address validation."""

    def test_lowercased(self):
        """Test addresses are normalized to lower case."""
        assert normalize_address("0xABCdef0123") == "0xabcdef0123"

    @pytest.mark.parametrize("subject", ["abc123", "0x", "0xZZZ", "0x" + "a" * 65, "vitalik.eth"])
    def test_rejected(self, subject):
        """Test malformed addresses are rejected."""
        with pytest.raises(SubjectValidationError):
            normalize_address(subject)

    def test_networks(self):
        """Test chain ids for supported networks."""
        assert CHAIN_NETWORKS["ethereum"] == 1
        assert CHAIN_NETWORKS["polygon"] == 137
        assert "web" in KNOWN_DOMAINS


class TestWebSubjects:
    """Test URL validation and canonicalization."""

    def test_bare_host_gets_https(self):
        """Test bare host names are given an https scheme."""
        assert normalize_url("Example.com") == "https://example.com"

    def test_tracking_and_fragment_removed(self):
        """Test tracking parameters, fragments and trailing slashes are dropped."""
        assert (
            normalize_url("https://Example.com/Blog/?utm_source=x&page=2&fbclid=abc#top")
            == "https://example.com/Blog?page=2"
        )

    def test_query_encoding_preserved(self):
        """Test encoded separators and spaces survive normalization."""
        assert (
            normalize_url("https://example.com/search?q=a%26b%3Dc&term=two+words&flag")
            == "https://example.com/search?q=a%26b%3Dc&term=two+words&flag="
        )


    def test_subdomains_kept(self):
        """Test sub-domains are part of the canonical URL."""
        assert normalize_url("http://shop.example.co.uk/") == "http://shop.example.co.uk"

    @pytest.mark.parametrize("subject", ["ftp://example.com", "localhost", "https://", "not a url"])
    def test_rejected(self, subject):
        """Test non-web or unregistrable subjects are rejected."""
        with pytest.raises(SubjectValidationError):
            normalize_url(subject)


class TestValidateRequest:
    """Test request-level validation."""

    def test_unknown_domain(self):
        """Test domains outside the known set are invalid requests."""
        request = AnalysisRequest(subject="0x1", domain="solana", capabilities=["tokens"])
        with pytest.raises(RequestValidationError):
            validate_request(request)

    def test_returns_normalized_copy(self):
        """Test the normalized subject is applied to a copy."""
        request = AnalysisRequest(subject="0xABC", domain="polygon", capabilities=["tokens"])
        normalized = validate_request(request)
        assert normalized.subject == "0xabc"
        assert request.subject == "0xABC"

    def test_already_normalized_is_unchanged(self):
        """Test a normalized request is returned as is."""
        request = AnalysisRequest(subject="https://example.com", domain="web", capabilities=["seo"])
        assert validate_request(request) is request
