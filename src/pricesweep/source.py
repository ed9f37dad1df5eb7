from __future__ import annotations

import http.client
import json
import socket
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit
from urllib.request import Request, urlopen

from bs4 import BeautifulSoup

from .models import ItemRef

TRANSIENT_STATUS_CODES = {403, 429, 500, 502, 503, 504}
RATE_LIMIT_STATUS_CODES = {403, 429}

_KNOWN_PARAMS = {
    "locationIdentifier",
    "minPrice",
    "maxPrice",
    "propertyTypes",
    "sortType",
    "includeSSTC",
}

_ITEM_PATHS = (
    ("properties",),
    ("searchResult", "properties"),
    ("propertySearch", "properties"),
    ("results",),
)

_TOTAL_PATHS = (
    ("pagination", "total"),
    ("resultCount",),
    ("searchResult", "pagination", "total"),
)

_HISTORY_PATHS = (
    ("soldHouseData", "properties"),
    ("propertyData", "soldPricesData", "properties"),
    ("props", "pageProps", "propertyData", "soldPricesData", "properties"),
    ("results",),
    ("properties",),
)


class SourceError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient

    @property
    def rate_limited(self) -> bool:
        return self.status_code in RATE_LIMIT_STATUS_CODES


class ParseError(SourceError):
    def __init__(self, message: str):
        super().__init__(message, transient=False)


@dataclass(frozen=True)
class QueryDefinition:
    base_url: str
    location: str | None = None
    min_price: int | None = None
    max_price: int | None = None
    property_type: str | None = None
    sort: str | None = None
    include_sold: bool = False
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_url(cls, url: str) -> "QueryDefinition":
        split = urlsplit(url.strip())
        if not split.scheme or not split.netloc:
            raise ValueError(f"search url must be absolute: {url}")
        params = dict(parse_qsl(split.query, keep_blank_values=True))
        extra = {key: value for key, value in params.items() if key not in _KNOWN_PARAMS}
        extra.pop("index", None)
        return cls(
            base_url=urlunsplit((split.scheme, split.netloc, split.path, "", "")),
            location=params.get("locationIdentifier") or None,
            min_price=_parse_int(params.get("minPrice")),
            max_price=_parse_int(params.get("maxPrice")),
            property_type=params.get("propertyTypes") or None,
            sort=params.get("sortType") or None,
            include_sold=str(params.get("includeSSTC", "")).lower() in {"1", "true", "yes"},
            extra=extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueryDefinition":
        if data.get("url") and not data.get("base_url"):
            base = cls.from_url(str(data["url"]))
            overrides = {key: value for key, value in data.items() if key != "url"}
            return replace(base, **_coerce_fields(overrides)) if overrides else base
        if not data.get("base_url"):
            raise ValueError("query definition requires base_url or url")
        return cls(**_coerce_fields(data))

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "location": self.location,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "property_type": self.property_type,
            "sort": self.sort,
            "include_sold": self.include_sold,
            "extra": dict(self.extra),
        }

    def with_price_range(self, min_price: int | None, max_price: int | None) -> "QueryDefinition":
        return replace(self, min_price=min_price, max_price=max_price)

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.location:
            params["locationIdentifier"] = self.location
        if self.min_price is not None:
            params["minPrice"] = str(self.min_price)
        if self.max_price is not None:
            params["maxPrice"] = str(self.max_price)
        if self.property_type:
            params["propertyTypes"] = self.property_type
        if self.sort:
            params["sortType"] = self.sort
        if self.include_sold:
            params["includeSSTC"] = "true"
        params.update(self.extra)
        return params

    def to_url(self, offset: int | None = None, index_param: str = "index") -> str:
        params = self.to_params()
        if offset:
            params[index_param] = str(offset)
        query = urlencode(params, safe="^,")
        return f"{self.base_url}?{query}" if query else self.base_url


@dataclass(frozen=True)
class SearchPage:
    items: list[ItemRef]
    total: int | None


class SearchSource:
    """Collaborator interface for the external search and detail endpoints."""

    def search(self, query: QueryDefinition, page: int) -> SearchPage:
        raise NotImplementedError

    def fetch_detail(self, ref: ItemRef) -> dict[str, Any]:
        raise NotImplementedError

    def fetch_history(self, url: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class HttpSearchSource(SearchSource):
    def __init__(
        self,
        *,
        timeout_seconds: int = 20,
        user_agent: str = "PriceSweep/0.1",
        page_size: int = 24,
        index_param: str = "index",
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.page_size = page_size
        self.index_param = index_param

    @classmethod
    def from_config(cls, config) -> "HttpSearchSource":
        return cls(
            timeout_seconds=config.http.timeout_seconds,
            user_agent=config.http.user_agent,
            page_size=config.source.page_size,
            index_param=config.source.index_param,
        )

    def search(self, query: QueryDefinition, page: int) -> SearchPage:
        url = query.to_url(offset=page * self.page_size, index_param=self.index_param)
        body = self._get(url)
        return parse_search_payload(load_page_model(body), query.base_url)

    def fetch_detail(self, ref: ItemRef) -> dict[str, Any]:
        body = self._get(ref.url)
        return parse_detail_payload(load_page_model(body), ref.url)

    def fetch_history(self, url: str) -> list[dict[str, Any]]:
        body = self._get(url)
        return parse_history_payload(load_page_model(body))

    def _get(self, url: str) -> str:
        request = Request(
            url,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
            },
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            raise SourceError(
                f"HTTP {exc.code} for {url}",
                status_code=exc.code,
                transient=exc.code in TRANSIENT_STATUS_CODES,
            ) from exc
        except (URLError, socket.timeout, TimeoutError) as exc:
            raise SourceError(f"connection error for {url}: {exc}", transient=True) from exc
        except (http.client.HTTPException, ConnectionError, OSError) as exc:
            # Raised from getresponse() or read(), which urllib does not wrap.
            raise SourceError(
                f"connection error for {url}: {exc.__class__.__name__}: {exc}", transient=True
            ) from exc
        return raw.decode("utf-8", errors="replace")


def load_page_model(body: str) -> dict[str, Any]:
    """Decode a JSON body, or the state object embedded in an HTML page."""
    text = body.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid JSON response: {exc}") from exc
        return _require_dict(data)
    soup = BeautifulSoup(body, "html.parser")
    for script in soup.find_all("script"):
        content = script.string or script.get_text() or ""
        marker = content.find("window.PAGE_MODEL")
        if marker == -1:
            continue
        start = content.find("{", marker)
        if start == -1:
            continue
        try:
            data, _ = json.JSONDecoder().raw_decode(content[start:])
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid PAGE_MODEL: {exc}") from exc
        return _require_dict(data)
    next_data = soup.find("script", id="__NEXT_DATA__")
    if next_data and next_data.string:
        try:
            data = json.loads(next_data.string)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid __NEXT_DATA__: {exc}") from exc
        return _require_dict(data)
    raise ParseError("no page model found in response")


def parse_search_payload(data: dict[str, Any], base_url: str) -> SearchPage:
    raw_items = None
    for path in _ITEM_PATHS:
        value = _dig(data, path)
        if isinstance(value, list) and value:
            raw_items = value
            break
    if raw_items is None:
        raw_items = _find_properties_list(data) or []
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        ref = _item_from_payload(raw, base_url)
        if ref is not None:
            items.append(ref)
    total = None
    for path in _TOTAL_PATHS:
        total = _parse_int(_dig(data, path))
        if total is not None:
            break
    return SearchPage(items=items, total=total)


def parse_detail_payload(data: dict[str, Any], url: str) -> dict[str, Any]:
    property_data = data.get("propertyData") or _dig(data, ("props", "pageProps", "propertyData"))
    if not isinstance(property_data, dict):
        raise ParseError(f"no propertyData in detail page {url}")
    address = property_data.get("address") or {}
    prices = property_data.get("prices") or {}
    images = [
        image.get("srcUrl") or image.get("url")
        for image in property_data.get("images") or []
        if isinstance(image, dict) and (image.get("srcUrl") or image.get("url"))
    ]
    history_url = (
        _dig(property_data, ("propertyUrls", "nearbySoldPropertiesUrl"))
        or _dig(property_data, ("soldNearby", "soldNearbyUrl"))
        or property_data.get("soldLink")
        or property_data.get("historyUrl")
    )
    if history_url:
        history_url = urljoin(url, str(history_url))
    return {
        "id": str(property_data["id"]) if property_data.get("id") is not None else None,
        "title": _dig(property_data, ("text", "pageTitle"))
        or property_data.get("propertyTypeFullDescription"),
        "address": address.get("displayAddress") if isinstance(address, dict) else str(address),
        "postcode": _postcode(address),
        "price": _parse_price(prices.get("primaryPrice") if isinstance(prices, dict) else prices),
        "display_price": prices.get("primaryPrice") if isinstance(prices, dict) else None,
        "bedrooms": _parse_int(property_data.get("bedrooms")),
        "bathrooms": _parse_int(property_data.get("bathrooms")),
        "property_type": property_data.get("propertySubType"),
        "tenure": _dig(property_data, ("tenure", "tenureType")),
        "images": images,
        "history_url": history_url,
    }


def parse_history_payload(data: dict[str, Any]) -> list[dict[str, Any]]:
    for path in _HISTORY_PATHS:
        value = _dig(data, path)
        if isinstance(value, list):
            return [entry for entry in value if isinstance(entry, dict)]
    raise ParseError("no sold history found in response")


def _item_from_payload(raw: dict[str, Any], base_url: str) -> ItemRef | None:
    item_id = raw.get("id", raw.get("propertyId"))
    url = raw.get("propertyUrl") or raw.get("url")
    if not url and item_id is not None:
        url = f"/properties/{item_id}"
    if not url:
        return None
    price_value = raw.get("price")
    display_price = None
    if isinstance(price_value, dict):
        display_prices = price_value.get("displayPrices") or []
        if display_prices and isinstance(display_prices[0], dict):
            display_price = display_prices[0].get("displayPrice")
        price_value = price_value.get("amount")
    address = raw.get("displayAddress") or raw.get("address")
    return ItemRef(
        id=str(item_id) if item_id is not None else None,
        url=urljoin(base_url, str(url)),
        price=_parse_price(price_value),
        display_price=display_price,
        address=address if isinstance(address, str) else None,
        property_type=raw.get("propertySubType") or raw.get("propertyType"),
        bedrooms=_parse_int(raw.get("bedrooms")),
    )


def _find_properties_list(data: Any, depth: int = 0) -> list[Any] | None:
    if depth > 6:
        return None
    if isinstance(data, dict):
        value = data.get("properties")
        if isinstance(value, list) and value:
            return value
        for child in data.values():
            found = _find_properties_list(child, depth + 1)
            if found:
                return found
    elif isinstance(data, list):
        for child in data:
            found = _find_properties_list(child, depth + 1)
            if found:
                return found
    return None


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _postcode(address: Any) -> str | None:
    if not isinstance(address, dict):
        return None
    outcode = address.get("outcode")
    incode = address.get("incode")
    if not outcode:
        return None
    return f"{outcode} {incode}".strip() if incode else str(outcode)


def _parse_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    return int(digits) if digits else None


def _parse_price(value: Any) -> int | None:
    if isinstance(value, dict):
        value = value.get("amount")
    return _parse_int(value)


def _coerce_fields(data: dict[str, Any]) -> dict[str, Any]:
    allowed = {
        "base_url",
        "location",
        "min_price",
        "max_price",
        "property_type",
        "sort",
        "include_sold",
        "extra",
    }
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"unknown query fields: {', '.join(sorted(unknown))}")
    coerced = dict(data)
    for key in ("min_price", "max_price"):
        if key in coerced:
            coerced[key] = _parse_int(coerced[key])
    if "include_sold" in coerced:
        coerced["include_sold"] = bool(coerced["include_sold"])
    if "extra" in coerced:
        coerced["extra"] = {str(k): str(v) for k, v in (coerced["extra"] or {}).items()}
    return coerced


def _require_dict(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ParseError("page model is not an object")
    return data
