"""Utilities for transforming Google Places responses and database rows into Business models."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from thriftscout.models import (
    Address,
    Business,
    BusinessHours,
    BusinessInfo,
    Contact,
    Coordinate,
    Media,
)

logger = logging.getLogger(__name__)


def parse_address_components(address_components: Iterable[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """Pick street, neighbourhood, city, state and postal code out of Google components."""
    parsed: Dict[str, Optional[str]] = {
        "street_number": None,
        "route": None,
        "neighborhood": None,
        "city": None,
        "state": None,
        "postal_code": None,
    }
    for component in address_components or []:
        types = set(component.get("types", []))
        if "street_number" in types:
            parsed["street_number"] = component.get("long_name")
        elif "route" in types:
            parsed["route"] = component.get("long_name")
        elif "sublocality" in types or "neighborhood" in types:
            parsed["neighborhood"] = component.get("long_name")
        elif "locality" in types or "administrative_area_level_2" in types:
            parsed["city"] = component.get("long_name")
        elif "administrative_area_level_1" in types:
            parsed["state"] = component.get("short_name")
        elif "postal_code" in types:
            parsed["postal_code"] = component.get("long_name")
    return parsed


def format_google_time(value: str) -> str:
    """Turn Google's ``"0930"`` into ``"09:30"``."""
    if value and len(value) == 4 and value.isdigit():
        return f"{value[:2]}:{value[2:]}"
    return value or ""


def parse_business_hours(periods: Iterable[Dict[str, Any]]) -> List[BusinessHours]:
    """One entry per weekday (0 = Sunday); days without a full period are closed."""
    periods = list(periods or [])
    hours: List[BusinessHours] = []
    for day in range(7):
        period = next((p for p in periods if (p.get("open") or {}).get("day") == day), None)
        if period and period.get("open") and period.get("close"):
            hours.append(
                BusinessHours(
                    day_of_week=day,
                    open_time=format_google_time(period["open"].get("time", "")),
                    close_time=format_google_time(period["close"].get("time", "")),
                )
            )
        else:
            hours.append(BusinessHours(day_of_week=day, is_closed_all_day=True))
    return hours


def _price_level(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 4:
        return value
    return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_coordinates(record: Mapping[str, Any]) -> Coordinate:
    location = (record.get("geometry") or {}).get("location") or {}
    lat = _optional_float(location.get("lat"))
    lng = _optional_float(location.get("lng"))
    if lat is None or lng is None or not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValueError(f"place {record.get('place_id')} has no valid coordinates")
    return Coordinate(lat=lat, lng=lng)


def to_business(
    place: Mapping[str, Any],
    details: Mapping[str, Any],
    photo_urls: List[str],
    now: datetime,
) -> Business:
    """Merge a text-search record and its details into a Business."""
    if not place.get("place_id"):
        raise ValueError("place record has no place_id")

    components = parse_address_components(details.get("address_components", []))
    try:
        coordinates = extract_coordinates(place)
    except ValueError:
        coordinates = extract_coordinates(details)

    opening_hours = place.get("opening_hours") or details.get("opening_hours") or {}
    hours = parse_business_hours(opening_hours.get("periods", [])) if opening_hours.get("periods") else []

    rating = _optional_float(place.get("rating", details.get("rating")))
    review_count = place.get("user_ratings_total", details.get("user_ratings_total"))

    return Business(
        place_id=str(place["place_id"]),
        name=(place.get("name") or details.get("name") or "").strip(),
        address=Address(
            formatted_address=place.get("formatted_address") or details.get("formatted_address") or "",
            coordinates=coordinates,
            street_number=components["street_number"],
            route=components["route"],
            neighborhood=components["neighborhood"],
            city=components["city"] or "Unknown",
            state=components["state"] or "Unknown",
            postal_code=components["postal_code"],
        ),
        contact=Contact(
            phone_number=details.get("formatted_phone_number") or details.get("international_phone_number"),
            website=details.get("website"),
        ),
        info=BusinessInfo(
            rating=rating,
            review_count=int(review_count) if review_count is not None else None,
            price_level=_price_level(place.get("price_level", details.get("price_level"))),
            categories=[str(t) for t in place.get("types") or details.get("types") or []],
            is_open_now=opening_hours.get("open_now"),
            hours=hours,
        ),
        media=Media(photos=photo_urls, profile_image=photo_urls[0] if photo_urls else None),
        discovered_at=now,
        last_updated=now,
        is_active=True,
    )


def to_business_row(business: Business) -> Dict[str, Any]:
    """Flatten a Business into the column layout of ``brecho_businesses``."""
    address = business.address
    info = business.info
    return {
        "place_id": business.place_id,
        "name": business.name,
        "formatted_address": address.formatted_address,
        "street_number": address.street_number,
        "route": address.route,
        "neighborhood": address.neighborhood,
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "latitude": address.coordinates.lat,
        "longitude": address.coordinates.lng,
        "phone_number": business.contact.phone_number,
        "website": business.contact.website,
        "facebook_url": business.contact.facebook_url,
        "instagram_url": business.contact.instagram_url,
        "rating": info.rating,
        "review_count": info.review_count,
        "price_level": info.price_level,
        "categories": list(info.categories),
        "is_open_now": info.is_open_now,
        "business_hours": [
            {
                "day_of_week": h.day_of_week,
                "open_time": h.open_time,
                "close_time": h.close_time,
                "is_closed_all_day": h.is_closed_all_day,
            }
            for h in info.hours
        ],
        "photos": list(business.media.photos),
        "profile_image": business.media.profile_image,
        "discovered_at": business.discovered_at,
        "last_updated": business.last_updated,
    }


def business_from_row(row: Mapping[str, Any]) -> Business:
    """Rebuild a Business from a ``brecho_businesses`` row."""
    hours = [
        BusinessHours(
            day_of_week=int(h.get("day_of_week", 0)),
            open_time=h.get("open_time") or "",
            close_time=h.get("close_time") or "",
            is_closed_all_day=bool(h.get("is_closed_all_day", False)),
        )
        for h in row.get("business_hours") or []
    ]
    photos = list(row.get("photos") or [])
    return Business(
        id=str(row["id"]) if row.get("id") is not None else None,
        place_id=row["place_id"],
        name=row["name"],
        address=Address(
            formatted_address=row.get("formatted_address") or "",
            coordinates=Coordinate(lat=float(row["latitude"]), lng=float(row["longitude"])),
            street_number=row.get("street_number"),
            route=row.get("route"),
            neighborhood=row.get("neighborhood"),
            city=row.get("city") or "Unknown",
            state=row.get("state") or "Unknown",
            postal_code=row.get("postal_code"),
        ),
        contact=Contact(
            phone_number=row.get("phone_number"),
            website=row.get("website"),
            facebook_url=row.get("facebook_url"),
            instagram_url=row.get("instagram_url"),
        ),
        info=BusinessInfo(
            rating=_optional_float(row.get("rating")),
            review_count=row.get("review_count"),
            price_level=row.get("price_level"),
            categories=list(row.get("categories") or []),
            is_open_now=row.get("is_open_now"),
            hours=hours,
        ),
        media=Media(photos=photos, profile_image=row.get("profile_image") or (photos[0] if photos else None)),
        discovered_at=row.get("discovered_at"),
        last_updated=row.get("last_updated"),
        is_active=bool(row.get("is_active", True)),
        data_source=row.get("data_source") or "google-places",
    )
