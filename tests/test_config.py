"""
Options de scraping et logging structuré.
"""
import json
import logging

import pytest
from pydantic import ValidationError

from app.core.config import ScraperConfig, load_proxies_from_env
from app.core.logging import JSONFormatter, apply_log_level, set_trace_id


class TestScraperConfig:
    def test_defaults(self):
        config = ScraperConfig(solve_captcha=False)

        assert config.proxy_rotation is True
        assert config.max_proxy_retries == 3
        assert config.max_concurrent_sessions == 5
        assert config.delay_between_requests.min == 1000
        assert config.delay_between_requests.max == 3000
        assert config.request_timeout == 30000
        assert config.max_retries == 3
        assert config.log_level == "basic"

    def test_camel_case_input(self):
        config = ScraperConfig.model_validate(
            {
                "proxyRotation": False,
                "maxConcurrentSessions": 2,
                "delayBetweenRequests": {"min": 10, "max": 20},
                "proxyPool": [{"host": "1.2.3.4", "port": 8080}],
                "logLevel": "detailed",
            }
        )

        assert config.proxy_rotation is False
        assert config.max_concurrent_sessions == 2
        assert config.delay_between_requests.max == 20
        assert config.proxy_pool[0].key == "http://1.2.3.4:8080"
        assert config.log_level == "detailed"

    def test_merged_accepts_both_spellings(self):
        base = ScraperConfig()
        merged = base.merged({"requestTimeout": 500, "max_retries": 1})

        assert merged.request_timeout == 500
        assert merged.max_retries == 1
        # L'original est inchangé
        assert base.request_timeout == 30000
        assert base.merged(None) is base

    @pytest.mark.parametrize(
        "overrides",
        [
            {"maxConcurrentSessions": 0},
            {"delayBetweenRequests": {"min": 3000, "max": 1000}},
            {"logLevel": "verbose"},
            {"requestTimeout": 0},
            {"maxProxyRetries": -1},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            ScraperConfig().merged(overrides)

    def test_frozen(self):
        with pytest.raises(ValidationError):
            ScraperConfig().max_retries = 10


def test_load_proxies_from_env():
    proxies = load_proxies_from_env("http://u:p@10.0.0.1:8000, ,socks5://10.0.0.2:1080")

    assert [p.key for p in proxies] == ["http://10.0.0.1:8000", "socks5://10.0.0.2:1080"]
    assert proxies[0].has_credentials
    assert load_proxies_from_env("") == []


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "level, expected",
    [("none", logging.CRITICAL + 10), ("basic", logging.INFO), ("detailed", logging.DEBUG)],
)
def test_apply_log_level(level, expected):
    try:
        apply_log_level(level)
        assert logging.getLogger("app").level == expected
    finally:
        apply_log_level("basic")


def test_json_formatter_includes_context():
    set_trace_id("abc12345")
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, "Acquisition successful", None, None)
    record.url = "https://www.amazon.com/dp/B08N5WRWNW"
    record.method = "browser"
    record.extra_data = {"attempts": 2}

    data = json.loads(JSONFormatter().format(record))

    assert data["message"] == "Acquisition successful"
    assert data["level"] == "INFO"
    assert data["trace_id"] == "abc12345"
    assert data["url"] == "https://www.amazon.com/dp/B08N5WRWNW"
    assert data["method"] == "browser"
    assert data["extra"] == {"attempts": 2}
