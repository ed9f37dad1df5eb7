import http.client
import json
import logging

import pytest

from pricesweep.pages import walk_pages
from pricesweep.source import (
    HttpSearchSource,
    ParseError,
    QueryDefinition,
    SourceError,
    load_page_model,
    parse_detail_payload,
    parse_history_payload,
    parse_search_payload,
)

SEARCH_URL = (
    "https://www.example.test/property-for-sale/find.html?"
    "locationIdentifier=REGION%5E87490&minPrice=100000&maxPrice=500000"
    "&propertyTypes=detached%2Csemi-detached&sortType=2&includeSSTC=true&radius=0.5"
)


def test_query_definition_from_url_keeps_unknown_params():
    query = QueryDefinition.from_url(SEARCH_URL)
    assert query.base_url == "https://www.example.test/property-for-sale/find.html"
    assert query.location == "REGION^87490"
    assert query.min_price == 100000
    assert query.max_price == 500000
    assert query.property_type == "detached,semi-detached"
    assert query.include_sold is True
    assert query.extra == {"radius": "0.5"}


def test_query_url_keeps_caret_and_comma_unencoded():
    query = QueryDefinition.from_url(SEARCH_URL).with_price_range(0, 250000)
    url = query.to_url(offset=48)
    assert "locationIdentifier=REGION^87490" in url
    assert "propertyTypes=detached,semi-detached" in url
    assert "minPrice=0" in url
    assert "maxPrice=250000" in url
    assert "index=48" in url


def test_query_definition_dict_round_trip_and_validation():
    query = QueryDefinition.from_url(SEARCH_URL)
    assert QueryDefinition.from_dict(query.to_dict()) == query
    assert QueryDefinition.from_dict({"url": SEARCH_URL, "max_price": 300000}).max_price == 300000
    with pytest.raises(ValueError):
        QueryDefinition.from_dict({"location": "REGION^1"})
    with pytest.raises(ValueError):
        QueryDefinition.from_dict({"base_url": "https://x.test", "colour": "blue"})


def test_load_page_model_from_html_script():
    model = {"properties": [{"id": 7, "price": {"amount": 250000}}], "resultCount": "1,234"}
    html = (
        "<html><head><script>var x = 1;</script>"
        f"<script>window.PAGE_MODEL = {json.dumps(model)};</script></head></html>"
    )
    assert load_page_model(html) == model


def test_load_page_model_rejects_unknown_pages():
    with pytest.raises(ParseError):
        load_page_model("<html><body>captcha</body></html>")


def test_parse_search_payload_reads_items_and_total():
    data = {
        "searchResult": {
            "properties": [
                {
                    "id": 11,
                    "propertyUrl": "/properties/11#/?channel=RES_BUY",
                    "price": {"amount": 300000, "displayPrices": [{"displayPrice": "£300,000"}]},
                    "displayAddress": "1 High Street",
                    "bedrooms": 3,
                },
                {"id": 12, "price": {"amount": 320000}},
            ],
            "pagination": {"total": 2},
        }
    }
    page = parse_search_payload(data, "https://www.example.test/property-for-sale/find.html")
    assert page.total == 2
    assert [item.id for item in page.items] == ["11", "12"]
    assert page.items[0].url.startswith("https://www.example.test/properties/11")
    assert page.items[0].display_price == "£300,000"
    assert page.items[1].url == "https://www.example.test/properties/12"


def test_parse_search_payload_deep_searches_properties():
    data = {"props": {"pageProps": {"searchResults": {"properties": [{"id": 1, "price": 5}]}}}}
    page = parse_search_payload(data, "https://www.example.test/")
    assert len(page.items) == 1
    assert page.total is None


def test_parse_detail_payload_extracts_history_link():
    data = {
        "propertyData": {
            "id": "99",
            "address": {"displayAddress": "2 Low Road", "outcode": "AB1", "incode": "2CD"},
            "prices": {"primaryPrice": "£450,000"},
            "bedrooms": 4,
            "images": [{"srcUrl": "https://img.test/1.jpg"}],
            "propertyUrls": {"nearbySoldPropertiesUrl": "/house-prices/ab1-2cd.html"},
        }
    }
    detail = parse_detail_payload(data, "https://www.example.test/properties/99")
    assert detail["price"] == 450000
    assert detail["postcode"] == "AB1 2CD"
    assert detail["history_url"] == "https://www.example.test/house-prices/ab1-2cd.html"
    with pytest.raises(ParseError):
        parse_detail_payload({}, "https://www.example.test/properties/99")


def test_parse_history_payload():
    data = {"soldHouseData": {"properties": [{"address": "x"}, "junk"]}}
    assert parse_history_payload(data) == [{"address": "x"}]
    with pytest.raises(ParseError):
        parse_history_payload({"nothing": []})


class _BrokenResponse:
    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def read(self):
        raise http.client.IncompleteRead(b"<html>")


@pytest.mark.parametrize(
    "failure",
    [
        http.client.RemoteDisconnected("Remote end closed connection without response"),
        ConnectionResetError(104, "Connection reset by peer"),
        None,
    ],
)
def test_dropped_connections_raise_transient_source_errors(monkeypatch, failure):
    def fake_urlopen(request, timeout):
        if failure is None:
            return _BrokenResponse()
        raise failure

    monkeypatch.setattr("pricesweep.source.urlopen", fake_urlopen)

    with pytest.raises(SourceError) as excinfo:
        HttpSearchSource().fetch_history("https://example.test/history/1")

    assert excinfo.value.transient is True
    assert excinfo.value.status_code is None
    assert "connection error" in str(excinfo.value)


def test_dropped_connections_are_retried_then_counted_as_failed_pages(monkeypatch):
    calls = []

    def fake_urlopen(request, timeout):
        calls.append(request.full_url)
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr("pricesweep.source.urlopen", fake_urlopen)
    query = QueryDefinition(base_url="https://example.test/find.html", location="REGION^1")

    result = walk_pages(
        HttpSearchSource(),
        query,
        logger=logging.getLogger("pricesweep.tests"),
        empty_page_limit=2,
        retries=3,
        sleep=lambda seconds: None,
    )

    assert result.items == []
    assert result.failed_pages == 2
    assert len(calls) == 6
