"""Client utilities for the Google Geocoding and Distance Matrix APIs."""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import requests

from thriftscout.core.errors import UpstreamProviderError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api"
_TIMEOUT = 10


class GoogleMapsError(UpstreamProviderError):
    """Raised when a Maps web service returns a non-successful response."""


def _format_points(points: Iterable[Tuple[float, float]]) -> str:
    return "|".join(f"{lat},{lng}" for lat, lng in points)


def _get(path: str, params: Dict[str, Any], operation: str) -> Dict[str, Any]:
    try:
        response = _SESSION.get(f"{_BASE_URL}/{path}", params=params, timeout=_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error("%s request failed: %s", operation, exc)
        raise GoogleMapsError(str(exc), status="HTTP_ERROR") from exc
    return response.json()


def reverse_geocode(lat: float, lng: float, api_key: str, language: str = "pt-BR") -> Optional[Dict[str, Any]]:
    """Return the first geocoding result for a coordinate, or None when nothing matches."""
    params = {"latlng": f"{lat},{lng}", "key": api_key, "language": language}
    payload = _get("geocode/json", params, "reverse_geocode")
    status = payload.get("status")
    if status == "ZERO_RESULTS":
        return None
    if status != "OK":
        logger.error("reverse_geocode failed: status=%s, error_message=%s", status, payload.get("error_message"))
        raise GoogleMapsError(payload.get("error_message") or str(status), status=status)
    results = payload.get("results") or []
    return results[0] if results else None


def distance_matrix(
    origins: Iterable[Tuple[float, float]],
    destinations: Iterable[Tuple[float, float]],
    api_key: str,
    mode: str = "driving",
    language: str = "pt-BR",
) -> Dict[str, Any]:
    params = {
        "origins": _format_points(origins),
        "destinations": _format_points(destinations),
        "mode": mode,
        "units": "metric",
        "language": language,
        "key": api_key,
    }
    payload = _get("distancematrix/json", params, "distance_matrix")
    status = payload.get("status")
    if status != "OK":
        logger.error("distance_matrix failed: status=%s, error_message=%s", status, payload.get("error_message"))
        raise GoogleMapsError(payload.get("error_message") or str(status), status=status)
    return payload
