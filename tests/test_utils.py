from datetime import timezone

from pricesweep.utils import format_price, normalize_url, parse_iso, stable_id_from_url


def test_normalize_url_lowercases_host_and_sorts_query():
    url = "HTTPS://Example.test/properties/123/?b=2&a=1#gallery"
    assert normalize_url(url) == "https://example.test/properties/123?a=1&b=2"


def test_stable_id_ignores_cosmetic_url_differences():
    first = stable_id_from_url("https://example.test/properties/9?x=1&y=2")
    second = stable_id_from_url("https://EXAMPLE.test/properties/9/?y=2&x=1")
    assert first == second
    assert first != stable_id_from_url("https://example.test/properties/10")


def test_format_price():
    assert format_price(1250000) == "1,250,000"
    assert format_price(None) == "-"


def test_parse_iso_accepts_zulu_suffix():
    parsed = parse_iso("2025-03-01T10:00:00Z")
    assert parsed.tzinfo == timezone.utc
    assert parsed.hour == 10
