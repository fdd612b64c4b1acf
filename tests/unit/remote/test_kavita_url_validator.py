"""Tests for server URL validation and normalization."""

import pytest

from kavita_client.remote.exceptions import URLValidationError
from kavita_client.remote.url_validator import (
    build_server_url,
    validate_and_normalize_server_url,
)


class TestValidateAndNormalize:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("http://192.168.1.50:5000", "http://192.168.1.50:5000"),
            ("http://192.168.1.50:5000/", "http://192.168.1.50:5000"),
            ("  https://kavita.example.com/  ", "https://kavita.example.com"),
            ("HTTPS://kavita.example.com", "https://kavita.example.com"),
            ("kavita.local:5000", "http://kavita.local:5000"),
            ("http://host/kavita/", "http://host/kavita"),
            ("http://host:5000/?x=1#frag", "http://host:5000"),
        ],
    )
    def test_normalization(self, raw, expected):
        assert validate_and_normalize_server_url(raw) == expected

    def test_default_scheme_is_configurable(self):
        assert validate_and_normalize_server_url("host", default_scheme="https") == "https://host"

    @pytest.mark.parametrize(
        "raw", [None, "", "   ", "ftp://host", "http://", "http://host:99999", "http://.host"]
    )
    def test_invalid_urls(self, raw):
        with pytest.raises(URLValidationError):
            validate_and_normalize_server_url(raw)

    def test_error_carries_details(self):
        with pytest.raises(URLValidationError) as exc_info:
            validate_and_normalize_server_url("http://host:notaport")

        assert exc_info.value.details
        assert exc_info.value.details in str(exc_info.value)
        assert exc_info.value.url == "http://host:notaport"


class TestBuildServerUrl:
    def test_host_and_port(self):
        assert build_server_url("192.168.1.50", 5000) == "http://192.168.1.50:5000"

    def test_https(self):
        assert build_server_url("kavita.example.com", 443, use_https=True) == (
            "https://kavita.example.com:443"
        )

    def test_typed_scheme_port_and_slash_are_replaced(self):
        assert build_server_url("https://192.168.1.50:8080/", 5000) == "http://192.168.1.50:5000"

    def test_without_port(self):
        assert build_server_url("kavita.local", None) == "http://kavita.local"
