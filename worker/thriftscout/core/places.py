"""Place provider adapter: keyword search, pagination and normalisation of Google Places records."""

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from thriftscout.core.config import Settings, get_settings
from thriftscout.core.errors import ConfigError
from thriftscout.etl.transform import to_business
from thriftscout.models import Business, SearchCriteria
from thriftscout.vendors import google_places

logger = logging.getLogger(__name__)

PAGE_SIZE = 20
MAX_PHOTOS = 5
PHOTO_MAX_WIDTH = 800

BASE_KEYWORDS = ("brechó", "brechós", "second hand", "segunda mão", "usado")
EXTRA_KEYWORDS = ("roupa", "clothing")

DOMAIN_KEYWORDS = (
    "brechó",
    "brechos",
    "brecho",
    "segunda mão",
    "segunda-mão",
    "segundamao",
    "usado",
    "usados",
    "second hand",
    "secondhand",
    "vintage",
    "consignment",
    "consignação",
    "sebo",
    "thrift",
    "bazar",
)
ALLOWED_TYPES = frozenset({"clothing_store", "store", "establishment", "point_of_interest", "shoe_store"})


class PlaceProvider:
    """Wraps the Places client with the brechó query and keyword filter."""

    def __init__(self, settings: Optional[Settings] = None, sleep: Callable[[float], None] = time.sleep) -> None:
        self.settings = settings or get_settings()
        self._sleep = sleep

    @property
    def api_key(self) -> str:
        if not self.settings.google_api_key:
            raise ConfigError("GOOGLE_API_KEY is required")
        return self.settings.google_api_key

    @staticmethod
    def build_search_query() -> str:
        return " OR ".join(BASE_KEYWORDS + EXTRA_KEYWORDS)

    def _fetch_page(self, criteria: SearchCriteria, pagetoken: Optional[str] = None) -> Dict[str, Any]:
        location = criteria.location
        response = google_places.text_search(
            query=self.build_search_query(),
            api_key=self.api_key,
            location=f"{location.lat},{location.lng}",
            radius=location.radius,
            language=self.settings.places_language,
            region=self.settings.places_region,
            pagetoken=pagetoken,
        )
        return {
            "results": self.filter_places_by_keywords(response.get("results", [])),
            "next_page_token": response.get("next_page_token"),
        }

    def search(self, criteria: SearchCriteria) -> List[Dict[str, Any]]:
        """Single page of keyword-filtered records."""
        return self._fetch_page(criteria)["results"]

    def search_with_pagination(self, criteria: SearchCriteria, max_results: int = 60) -> List[Dict[str, Any]]:
        """Follow ``next_page_token`` until ``max_results`` or the provider runs out.

        A failing first page raises. A failing follow-up page ends the loop and the
        records gathered so far are returned.
        """
        max_pages = max(1, math.ceil(max_results / PAGE_SIZE))
        places: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        pages = 0

        while True:
            if pages > 0:
                # Google rejects a fresh page token for a couple of seconds.
                self._sleep(self.settings.page_token_delay_seconds)
            try:
                page = self._fetch_page(criteria, page_token)
            except Exception as exc:  # noqa: BLE001
                if pages == 0:
                    raise
                logger.warning("Stopping pagination after page %d: %s", pages, exc)
                break

            places.extend(page["results"])
            page_token = page["next_page_token"]
            pages += 1
            logger.info(
                "Fetched page %d: %d matching results (total=%d, has_next=%s)",
                pages,
                len(page["results"]),
                len(places),
                bool(page_token),
            )
            if not page_token or pages >= max_pages or len(places) >= max_results:
                break

        return places[:max_results]

    @staticmethod
    def filter_places_by_keywords(places: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Keep records whose name/address has a domain keyword AND whose types are relevant."""
        matched = []
        for place in places:
            text = f"{place.get('name') or ''} {place.get('formatted_address') or ''}".lower()
            has_keyword = any(keyword in text for keyword in DOMAIN_KEYWORDS)
            has_type = bool(ALLOWED_TYPES.intersection(place.get("types") or []))
            if has_keyword and has_type:
                matched.append(place)
            else:
                logger.debug("Discarding %s (keyword=%s, type=%s)", place.get("name"), has_keyword, has_type)
        return matched

    def photo_urls(self, details: Dict[str, Any]) -> List[str]:
        urls = []
        for photo in (details.get("photos") or [])[:MAX_PHOTOS]:
            reference = photo.get("photo_reference")
            if reference:
                urls.append(google_places.photo_url(reference, self.api_key, max_width=PHOTO_MAX_WIDTH))
        return urls

    def convert_to_business_model(
        self,
        place: Dict[str, Any],
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Business:
        """Normalise a text-search record, fetching details when they were not supplied."""
        if details is None:
            details = google_places.place_details(
                place_id=place["place_id"],
                api_key=self.api_key,
                language=self.settings.places_language,
            )
        return to_business(place, details, self.photo_urls(details), now or datetime.now(timezone.utc))
