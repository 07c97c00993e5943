"""Client utilities for the Google Places API."""

import logging
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

import requests

from thriftscout.core.errors import UpstreamProviderError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"
_TIMEOUT = 10

DEFAULT_DETAIL_FIELDS = (
    "place_id",
    "name",
    "formatted_address",
    "address_components",
    "geometry",
    "rating",
    "user_ratings_total",
    "price_level",
    "types",
    "formatted_phone_number",
    "international_phone_number",
    "website",
    "opening_hours",
    "photos",
    "business_status",
)


class GooglePlacesError(UpstreamProviderError):
    """Raised when the Places API returns a non-successful response."""


def _get(path: str, params: Dict[str, Any], operation: str) -> Dict[str, Any]:
    try:
        response = _SESSION.get(f"{_BASE_URL}/{path}", params=params, timeout=_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error("%s request failed: %s", operation, exc)
        raise GooglePlacesError(str(exc), status="HTTP_ERROR") from exc
    return response.json()


def text_search(
    query: str,
    api_key: str,
    *,
    location: Optional[str] = None,
    radius: Optional[float] = None,
    language: Optional[str] = None,
    region: Optional[str] = None,
    place_type: Optional[str] = "store",
    pagetoken: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"query": query, "key": api_key}
    if location:
        params["location"] = location
    if radius is not None:
        params["radius"] = int(radius)
    if language:
        params["language"] = language
    if region:
        params["region"] = region
    if place_type:
        params["type"] = place_type
    if pagetoken:
        params["pagetoken"] = pagetoken

    payload = _get("textsearch/json", params, "text_search")
    status = payload.get("status")
    if status not in {"OK", "ZERO_RESULTS"}:
        logger.error("text_search failed: status=%s, error_message=%s", status, payload.get("error_message"))
        raise GooglePlacesError(payload.get("error_message") or str(status), status=status)
    return payload


def place_details(
    place_id: str,
    api_key: str,
    fields: Optional[Iterable[str]] = None,
    language: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "place_id": place_id,
        "key": api_key,
        "fields": ",".join(fields or DEFAULT_DETAIL_FIELDS),
    }
    if language:
        params["language"] = language

    payload = _get("details/json", params, "place_details")
    status = payload.get("status")
    if status != "OK":
        logger.error("place_details failed: status=%s, error_message=%s", status, payload.get("error_message"))
        raise GooglePlacesError(payload.get("error_message") or str(status), status=status)
    return payload.get("result", {})


def photo_url(photo_reference: str, api_key: str, max_width: int = 400) -> str:
    query = urlencode({"photoreference": photo_reference, "maxwidth": max_width, "key": api_key})
    return f"{_BASE_URL}/photo?{query}"
