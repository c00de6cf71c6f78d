"""Unit tests for fault normalization and classification."""

import asyncio

import pytest

from stealth_engine.middleware.error_handler import (
    CaptchaSolveError,
    DetectionError,
    ExtractionError,
    NavigationError,
)
from stealth_engine.resilience.classifier import (
    ErrorCategory,
    ErrorClassifier,
    Fault,
    StrategyKind,
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


def _classify(classifier, exc):
    return classifier.classify(Fault.from_exception(exc))


class TestFaultFromException:
    def test_navigation_error_keeps_code_status_and_content(self):
        fault = Fault.from_exception(
            NavigationError("boom", code="ETIMEDOUT", status=504, page_content="<p>x</p>")
        )
        assert fault.code == "ETIMEDOUT"
        assert fault.status == 504
        assert fault.page_content == "<p>x</p>"
        assert fault.error_type == "NavigationError"

    def test_navigation_code_parsed_from_message(self):
        fault = Fault.from_exception(NavigationError("net::ERR connect ECONNREFUSED 10.0.0.1:443"))
        assert fault.code == "ECONNREFUSED"

    def test_extraction_error_is_parsing(self):
        fault = Fault.from_exception(ExtractionError("gone", selector=".price", expected_content="$1"))
        assert fault.parsing is True
        assert fault.selector == ".price"
        assert fault.expected_content == "$1"

    def test_asyncio_timeout_maps_to_etimedout(self):
        assert Fault.from_exception(asyncio.TimeoutError()).code == "ETIMEDOUT"

    def test_empty_message_uses_class_name(self):
        assert Fault.from_exception(RuntimeError()).message == "RuntimeError"


class TestDetection:
    def test_captcha_phrase(self, classifier):
        result = _classify(classifier, DetectionError("Please verify you are human"))
        assert result.category == ErrorCategory.DETECTION
        assert result.type == "captcha"
        assert result.strategies[0] == StrategyKind.SOLVE_CAPTCHA

    def test_captcha_marker_in_page_beats_403(self, classifier):
        exc = NavigationError(status=403, page_content='<div class="g-recaptcha" data-sitekey="k"></div>')
        result = _classify(classifier, exc)
        assert result.type == "captcha"
        assert result.matched_pattern == "g-recaptcha"

    def test_solve_captcha_before_rotate_identity(self, classifier):
        result = _classify(classifier, DetectionError("complete the captcha"))
        order = list(result.strategies)
        assert order.index(StrategyKind.SOLVE_CAPTCHA) < order.index(StrategyKind.ROTATE_IDENTITY)

    def test_solver_failure_stays_in_detection(self, classifier):
        result = _classify(classifier, CaptchaSolveError("timed out"))
        assert result.category == ErrorCategory.DETECTION
        assert result.type == "captcha"

    def test_bare_429_is_rate_limit(self, classifier):
        result = _classify(classifier, NavigationError(status=429))
        assert result.type == "rate_limit"
        assert result.matched_pattern == "status:429"

    def test_bare_403_is_banned(self, classifier):
        result = _classify(classifier, DetectionError(status=403))
        assert result.type == "banned"

    def test_ban_phrase(self, classifier):
        assert _classify(classifier, RuntimeError("IP banned")).type == "banned"

    def test_behavioral_detection_phrase(self, classifier):
        result = _classify(classifier, RuntimeError("Unusual activity detected on your network"))
        assert result.type == "behavioral_detection"

    def test_honeypot_indicator(self, classifier):
        result = _classify(classifier, RuntimeError("hidden-field-filled"))
        assert result.type == "honeypot"
        assert result.strategies[0] == StrategyKind.RESTART_SESSION


class TestNetwork:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Timeout ETIMEDOUT", "timeout"),
            ("connect ECONNREFUSED", "connection_refused"),
            ("getaddrinfo ENOTFOUND market.test", "dns_failure"),
            ("net::ERR_CERT_AUTHORITY_INVALID", "tls_error"),
            ("net::ERR_PROXY_CONNECTION_FAILED", "proxy_error"),
        ],
    )
    def test_codes(self, classifier, message, expected):
        result = _classify(classifier, NavigationError(message))
        assert result.category == ErrorCategory.NETWORK
        assert result.type == expected

    def test_key(self, classifier):
        result = _classify(classifier, NavigationError("slow", code="ETIMEDOUT"))
        assert result.key == "network_timeout"


class TestParsing:
    def test_selector_not_found(self, classifier):
        result = _classify(classifier, ExtractionError("selector failed: .price", selector=".price"))
        assert result.category == ErrorCategory.PARSING
        assert result.type == "selector_not_found"

    def test_unknown_message_with_selector(self, classifier):
        result = _classify(classifier, ExtractionError("odd", selector=".price"))
        assert result.type == "selector_not_found"

    def test_empty_response(self, classifier):
        assert _classify(classifier, ExtractionError("no data")).type == "empty_response"

    def test_encoding_error(self, classifier):
        exc = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        assert _classify(classifier, exc).type == "encoding_error"

    def test_parsing_phrases_need_a_parsing_fault(self, classifier):
        # Same words from a generic error do not make it a parsing fault
        assert _classify(classifier, RuntimeError("no data")).category == ErrorCategory.UNKNOWN


class TestResourceAndBehavioral:
    def test_browser_crash(self, classifier):
        result = _classify(classifier, RuntimeError("Target closed"))
        assert result.category == ErrorCategory.RESOURCE
        assert result.type == "browser_crash"

    def test_memory_error(self, classifier):
        assert _classify(classifier, MemoryError()).type == "memory_exhaustion"

    def test_too_fast(self, classifier):
        result = _classify(classifier, RuntimeError("actions too quick"))
        assert result.category == ErrorCategory.BEHAVIORAL
        assert result.type == "too_fast"


class TestUnknown:
    def test_generic_fallback(self, classifier):
        result = _classify(classifier, RuntimeError("something odd"))
        assert result.category == ErrorCategory.UNKNOWN
        assert result.type == "generic"
        assert result.strategies == (
            StrategyKind.DELAY,
            StrategyKind.EXPONENTIAL_BACKOFF,
            StrategyKind.FALLBACK,
        )

    def test_pattern_count(self, classifier):
        assert classifier.pattern_count() == 22
