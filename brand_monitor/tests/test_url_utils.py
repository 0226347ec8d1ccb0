import pytest

from brand_monitor.services.url_utils import (
    extract_domain,
    is_valid_url_format,
    normalize_domain,
    validate_competitor_url,
)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("firecrawl.dev", True),
        ("https://www.firecrawl.dev/pricing", True),
        ("http://sub.example.co.uk", True),
        ("localhost", False),
        ("example.c", False),
        ("example.123", False),
        ("-bad-.com", False),
        ("exa_mple.com", False),
        ("", False),
        ("not a url", False),
    ],
)
def test_is_valid_url_format(url, expected):
    assert is_valid_url_format(url) is expected


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://www.acme.com/", "www.acme.com"),
        ("acme.com/products/", "acme.com/products"),
        ("  HTTP://Acme.com  ", "acme.com"),
        ("", None),
        (None, None),
        ("   ", None),
    ],
)
def test_validate_competitor_url(url, expected):
    assert validate_competitor_url(url) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        ("https://www.Acme.com/", "acme.com"),
        ("WWW.acme.com", "acme.com"),
        ("acme.com/pricing", "acme.com/pricing"),
        (None, ""),
    ],
)
def test_normalize_domain(value, expected):
    assert normalize_domain(value) == expected


def test_extract_domain_adds_a_scheme():
    assert extract_domain("acme.com/about") == "acme.com"
