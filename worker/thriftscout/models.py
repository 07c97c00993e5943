"""Core data models shared by discovery, analytics and the map engine."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from thriftscout.core.errors import ValidationError

MIN_RADIUS_M = 100
MAX_RADIUS_M = 50_000
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

MAP_TYPES = ("roadmap", "satellite", "hybrid", "terrain")
EXPORT_FORMATS = ("csv", "excel")
TIMEFRAMES = ("30d", "90d", "1y")
TRAVEL_MODES = ("driving", "walking", "transit")
DENSITY_TIERS = ("low", "medium", "high")


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclass output into JSON friendly values."""
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _read_number(
    payload: Mapping[str, Any],
    key: str,
    errors: Dict[str, str],
    *,
    path: str,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    required: bool = False,
    integer: bool = False,
) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        if required:
            errors[path] = "is required"
        return None
    if not _is_number(value) or (integer and float(value) != int(value)):
        errors[path] = "must be an integer" if integer else "must be numeric"
        return None
    if minimum is not None and value < minimum:
        errors[path] = f"must be >= {minimum}"
        return None
    if maximum is not None and value > maximum:
        errors[path] = f"must be <= {maximum}"
        return None
    return int(value) if integer else float(value)


def _read_bool(payload: Mapping[str, Any], key: str, errors: Dict[str, str], *, path: str) -> Optional[bool]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        errors[path] = "must be a boolean"
        return None
    return value


def _read_mapping(payload: Any, path: str, errors: Dict[str, str]) -> Optional[Mapping[str, Any]]:
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        errors[path] = "must be an object"
        return None
    return payload


@dataclass(frozen=True, slots=True)
class Coordinate:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_payload(cls, payload: Any, path: str = "coordinates") -> "Coordinate":
        errors: Dict[str, str] = {}
        coordinate = parse_coordinate(payload, path, errors)
        if errors or coordinate is None:
            raise ValidationError("Invalid coordinates", errors or {path: "is required"})
        return coordinate


def parse_coordinate(payload: Any, path: str, errors: Dict[str, str]) -> Optional[Coordinate]:
    """Read a ``{"lat", "lng"}`` object, recording problems in ``errors``."""
    mapping = _read_mapping(payload, path, errors)
    if mapping is None:
        if payload is None:
            errors[path] = "is required"
        return None
    lat = _read_number(mapping, "lat", errors, path=f"{path}.lat", minimum=-90, maximum=90, required=True)
    lng = _read_number(mapping, "lng", errors, path=f"{path}.lng", minimum=-180, maximum=180, required=True)
    if lat is None or lng is None:
        return None
    return Coordinate(lat=lat, lng=lng)


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Rectangle of degrees. ``northeast.lng`` may exceed 180 when the box wraps."""

    northeast: Coordinate
    southwest: Coordinate

    @property
    def longitude_span(self) -> float:
        return self.northeast.lng - self.southwest.lng

    @property
    def center(self) -> Coordinate:
        lng = (self.northeast.lng + self.southwest.lng) / 2
        if lng > 180:
            lng -= 360
        return Coordinate(
            lat=(self.northeast.lat + self.southwest.lat) / 2,
            lng=lng,
        )

    def contains(self, point: Coordinate) -> bool:
        if not self.southwest.lat <= point.lat <= self.northeast.lat:
            return False
        span = self.longitude_span
        if span >= 360:
            return True
        offset = (point.lng - self.southwest.lng) % 360
        return offset <= span

    def longitude_ranges(self) -> List[Tuple[float, float]]:
        """Split the box into ranges inside [-180, 180] usable in SQL predicates."""
        span = self.longitude_span
        if span >= 360:
            return [(-180.0, 180.0)]
        west = ((self.southwest.lng + 180) % 360) - 180
        east = west + span
        if east <= 180:
            return [(west, east)]
        return [(west, 180.0), (-180.0, east - 360)]

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {"northeast": self.northeast.to_dict(), "southwest": self.southwest.to_dict()}


@dataclass(frozen=True, slots=True)
class MapBounds:
    northeast: Coordinate
    southwest: Coordinate

    def normalized(self) -> "MapBounds":
        return MapBounds(
            northeast=Coordinate(
                lat=max(self.northeast.lat, self.southwest.lat),
                lng=max(self.northeast.lng, self.southwest.lng),
            ),
            southwest=Coordinate(
                lat=min(self.northeast.lat, self.southwest.lat),
                lng=min(self.northeast.lng, self.southwest.lng),
            ),
        )

    def to_box(self) -> BoundingBox:
        bounds = self.normalized()
        return BoundingBox(northeast=bounds.northeast, southwest=bounds.southwest)

    @classmethod
    def from_corners(cls, sw_lat: float, sw_lng: float, ne_lat: float, ne_lng: float) -> "MapBounds":
        payload = {"sw": {"lat": sw_lat, "lng": sw_lng}, "ne": {"lat": ne_lat, "lng": ne_lng}}
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: Any) -> "MapBounds":
        errors: Dict[str, str] = {}
        mapping = _read_mapping(payload, "bounds", errors)
        if mapping is None:
            raise ValidationError("Bounds parameter is required", errors or {"bounds": "is required"})
        ne = parse_coordinate(mapping.get("ne"), "bounds.ne", errors)
        sw = parse_coordinate(mapping.get("sw"), "bounds.sw", errors)
        if errors or ne is None or sw is None:
            raise ValidationError("Invalid bounds", errors)
        return cls(northeast=ne, southwest=sw).normalized()


@dataclass(slots=True)
class BusinessHours:
    day_of_week: int
    open_time: str = ""
    close_time: str = ""
    is_closed_all_day: bool = False


@dataclass(slots=True)
class Address:
    formatted_address: str
    coordinates: Coordinate
    city: str = "Unknown"
    state: str = "Unknown"
    street_number: Optional[str] = None
    route: Optional[str] = None
    neighborhood: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass(slots=True)
class Contact:
    phone_number: Optional[str] = None
    website: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None


@dataclass(slots=True)
class BusinessInfo:
    rating: Optional[float] = None
    review_count: Optional[int] = None
    price_level: Optional[int] = None
    categories: List[str] = field(default_factory=list)
    is_open_now: Optional[bool] = None
    hours: List[BusinessHours] = field(default_factory=list)


@dataclass(slots=True)
class Media:
    photos: List[str] = field(default_factory=list)
    profile_image: Optional[str] = None


@dataclass(slots=True)
class Business:
    """A second-hand clothing business as stored in the cache."""

    place_id: str
    name: str
    address: Address
    contact: Contact = field(default_factory=Contact)
    info: BusinessInfo = field(default_factory=BusinessInfo)
    media: Media = field(default_factory=Media)
    id: Optional[str] = None
    discovered_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    is_active: bool = True
    data_source: str = "google-places"

    @property
    def coordinates(self) -> Coordinate:
        return self.address.coordinates

    @property
    def key(self) -> str:
        return self.id or self.place_id

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True, slots=True)
class BusinessFilters:
    """Closed filter set. Every populated field must hold for a business to pass."""

    min_rating: Optional[float] = None
    max_rating: Optional[float] = None
    min_review_count: Optional[int] = None
    price_levels: Tuple[int, ...] = ()
    open_now: Optional[bool] = None
    has_website: Optional[bool] = None
    has_photos: Optional[bool] = None
    categories: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not self.to_dict()

    def to_dict(self) -> Dict[str, Any]:
        active: Dict[str, Any] = {}
        for name in self.__slots__:
            value = getattr(self, name)
            if value is None or value == ():
                continue
            active[name] = list(value) if isinstance(value, tuple) else value
        return active

    def matches(self, business: Business) -> bool:
        info = business.info
        if self.min_rating is not None and (info.rating is None or info.rating < self.min_rating):
            return False
        if self.max_rating is not None and (info.rating is None or info.rating > self.max_rating):
            return False
        if self.min_review_count is not None and (
            info.review_count is None or info.review_count < self.min_review_count
        ):
            return False
        if self.price_levels and info.price_level not in self.price_levels:
            return False
        if self.open_now and not info.is_open_now:
            return False
        if self.has_website and not business.contact.website:
            return False
        if self.has_photos and not business.media.photos:
            return False
        if self.categories and not set(self.categories).intersection(info.categories):
            return False
        return True

    def apply(self, businesses: List[Business]) -> List[Business]:
        return [business for business in businesses if self.matches(business)]

    @classmethod
    def from_payload(cls, payload: Any, path: str = "filters") -> "BusinessFilters":
        errors: Dict[str, str] = {}
        filters = parse_filters(payload, path, errors)
        if errors:
            raise ValidationError("Invalid filters", errors)
        return filters


def parse_filters(payload: Any, path: str, errors: Dict[str, str]) -> BusinessFilters:
    mapping = _read_mapping(payload, path, errors)
    if not mapping:
        return BusinessFilters()

    min_rating = _read_number(mapping, "min_rating", errors, path=f"{path}.min_rating", minimum=0, maximum=5)
    max_rating = _read_number(mapping, "max_rating", errors, path=f"{path}.max_rating", minimum=0, maximum=5)
    if min_rating is not None and max_rating is not None and min_rating > max_rating:
        errors[f"{path}.max_rating"] = "must be >= min_rating"
    min_review_count = _read_number(
        mapping, "min_review_count", errors, path=f"{path}.min_review_count", minimum=0, integer=True
    )

    price_levels: Tuple[int, ...] = ()
    raw_levels = mapping.get("price_levels")
    if raw_levels is not None:
        if not isinstance(raw_levels, list) or not all(
            _is_number(level) and int(level) == level and 1 <= level <= 4 for level in raw_levels
        ):
            errors[f"{path}.price_levels"] = "must be a list of integers between 1 and 4"
        else:
            price_levels = tuple(sorted({int(level) for level in raw_levels}))

    categories: Tuple[str, ...] = ()
    raw_categories = mapping.get("categories")
    if raw_categories is not None:
        if not isinstance(raw_categories, list) or not all(isinstance(c, str) for c in raw_categories):
            errors[f"{path}.categories"] = "must be a list of strings"
        else:
            categories = tuple(c.strip() for c in raw_categories if c.strip())

    return BusinessFilters(
        min_rating=min_rating,
        max_rating=max_rating,
        min_review_count=min_review_count,
        price_levels=price_levels,
        open_now=_read_bool(mapping, "open_now", errors, path=f"{path}.open_now"),
        has_website=_read_bool(mapping, "has_website", errors, path=f"{path}.has_website"),
        has_photos=_read_bool(mapping, "has_photos", errors, path=f"{path}.has_photos"),
        categories=categories,
    )


@dataclass(frozen=True, slots=True)
class SearchLocation:
    lat: float
    lng: float
    radius: float

    @property
    def center(self) -> Coordinate:
        return Coordinate(lat=self.lat, lng=self.lng)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng, "radius": self.radius}


def parse_location(payload: Any, path: str, errors: Dict[str, str]) -> Optional[SearchLocation]:
    mapping = _read_mapping(payload, path, errors)
    if mapping is None:
        if payload is None:
            errors[path] = "is required"
        return None
    lat = _read_number(mapping, "lat", errors, path=f"{path}.lat", minimum=-90, maximum=90, required=True)
    lng = _read_number(mapping, "lng", errors, path=f"{path}.lng", minimum=-180, maximum=180, required=True)
    radius = _read_number(
        mapping, "radius", errors, path=f"{path}.radius", minimum=MIN_RADIUS_M, maximum=MAX_RADIUS_M, required=True
    )
    if lat is None or lng is None or radius is None:
        return None
    return SearchLocation(lat=lat, lng=lng, radius=radius)


@dataclass(frozen=True, slots=True)
class SearchCriteria:
    location: Optional[SearchLocation]
    filters: BusinessFilters = field(default_factory=BusinessFilters)
    page: int = 1
    limit: int = DEFAULT_PAGE_LIMIT

    def validate(self) -> None:
        errors: Dict[str, str] = {}
        if self.location is None:
            errors["location"] = "is required"
        else:
            if not -90 <= self.location.lat <= 90:
                errors["location.lat"] = "must be between -90 and 90"
            if not -180 <= self.location.lng <= 180:
                errors["location.lng"] = "must be between -180 and 180"
            if not MIN_RADIUS_M <= self.location.radius <= MAX_RADIUS_M:
                errors["location.radius"] = f"must be between {MIN_RADIUS_M} and {MAX_RADIUS_M}"
        if self.page < 1:
            errors["pagination.page"] = "must be >= 1"
        if not 1 <= self.limit <= MAX_PAGE_LIMIT:
            errors["pagination.limit"] = f"must be between 1 and {MAX_PAGE_LIMIT}"
        if errors:
            message = "Location is required for search" if "location" in errors else "Invalid search criteria"
            raise ValidationError(message, errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location.to_dict() if self.location else None,
            "filters": self.filters.to_dict(),
            "pagination": {"page": self.page, "limit": self.limit},
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "SearchCriteria":
        errors: Dict[str, str] = {}
        mapping = _read_mapping(payload, "criteria", errors)
        if mapping is None:
            raise ValidationError("Location is required for search", errors or {"location": "is required"})

        location = parse_location(mapping.get("location"), "location", errors)
        filters = parse_filters(mapping.get("filters"), "filters", errors)

        page, limit = 1, DEFAULT_PAGE_LIMIT
        pagination = _read_mapping(mapping.get("pagination"), "pagination", errors)
        if pagination:
            page = _read_number(pagination, "page", errors, path="pagination.page", minimum=1, integer=True) or 1
            limit = (
                _read_number(
                    pagination, "limit", errors, path="pagination.limit", minimum=1, maximum=MAX_PAGE_LIMIT, integer=True
                )
                or DEFAULT_PAGE_LIMIT
            )

        if errors:
            message = "Location is required for search" if errors.get("location") == "is required" else "Invalid request data"
            raise ValidationError(message, errors)
        return cls(location=location, filters=filters, page=int(page), limit=int(limit))


@dataclass(slots=True)
class RankedBusiness:
    business: Business
    distance_from_center: float

    def to_dict(self) -> Dict[str, Any]:
        data = self.business.to_dict()
        data["distance_from_center"] = round(self.distance_from_center, 2)
        return data


@dataclass(slots=True)
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int


@dataclass(slots=True)
class SearchMetadata:
    search_id: str
    search_center: Coordinate
    radius: float
    filters_applied: Dict[str, Any]
    search_duration_ms: int
    cache_hit: bool


@dataclass(slots=True)
class SearchResponse:
    businesses: List[RankedBusiness]
    pagination: Pagination
    metadata: SearchMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "businesses": [item.to_dict() for item in self.businesses],
            "pagination": asdict(self.pagination),
            "metadata": to_jsonable(asdict(self.metadata)),
        }


@dataclass(slots=True)
class SearchResultRecord:
    search_id: str
    business_id: str
    owner_id: str
    search_center: Coordinate
    search_radius: float
    filters_applied: Dict[str, Any]
    distance_from_center: float


@dataclass(frozen=True, slots=True)
class PopulationSample:
    """External population-density signal for an area (inhabitants per km²)."""

    area: str
    density: float
    coordinates: Coordinate


@dataclass(slots=True)
class DensityPoint:
    coordinates: Coordinate
    weight: int
    business_count: int
    average_rating: float


@dataclass(slots=True)
class MarketGap:
    center: Coordinate
    radius: float
    population_density: str
    competitor_count: int
    opportunity_score: float
    reasons: List[str]
    density_estimated: bool = False
    name: Optional[str] = None


@dataclass(slots=True)
class CompetitorCluster:
    center: Coordinate
    businesses: List[Business]
    average_rating: float
    total_reviews: int
    competition_level: str
    market_share: float
    shares: Dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class MapMarker:
    id: str
    position: Coordinate
    business: Business
    marker_type: str = "business"


@dataclass(slots=True)
class MapCluster:
    id: str
    position: Coordinate
    count: int
    average_rating: float
    businesses: List[Business]


@dataclass(frozen=True, slots=True)
class MarketRegion:
    city: Optional[str] = None
    state: Optional[str] = None
    center: Optional[Coordinate] = None
    radius: float = 10_000

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MarketRegion":
        errors: Dict[str, str] = {}
        city = (payload.get("city") or "").strip() or None
        state = (payload.get("state") or "").strip() or None
        center = None
        radius = 10_000.0
        if payload.get("lat") is not None or payload.get("lng") is not None:
            center = parse_coordinate({"lat": payload.get("lat"), "lng": payload.get("lng")}, "region", errors)
            parsed = _read_number(payload, "radius", errors, path="region.radius", minimum=MIN_RADIUS_M, maximum=MAX_RADIUS_M)
            radius = parsed if parsed is not None else radius
        if not errors and center is None and city is None and state is None:
            errors["region"] = "city, state or lat/lng is required"
        if errors:
            raise ValidationError("Invalid region", errors)
        return cls(city=city, state=state, center=center, radius=radius)


@dataclass(slots=True)
class SavedMapView:
    owner_id: str
    name: str
    center: Coordinate
    zoom: int
    map_type: str = "roadmap"
    description: Optional[str] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    visible_layers: List[str] = field(default_factory=list)
    is_public: bool = False
    share_token: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))

    @classmethod
    def from_payload(cls, owner_id: str, payload: Any) -> "SavedMapView":
        errors: Dict[str, str] = {}
        mapping = _read_mapping(payload, "view", errors) or {}

        name = mapping.get("name")
        if not isinstance(name, str) or not 1 <= len(name.strip()) <= 100:
            errors["name"] = "must be between 1 and 100 characters"
        description = mapping.get("description")
        if description is not None and (not isinstance(description, str) or len(description) > 500):
            errors["description"] = "must be a string of at most 500 characters"
        center = parse_coordinate(mapping.get("center"), "center", errors)
        zoom = _read_number(mapping, "zoom", errors, path="zoom", minimum=1, maximum=20, required=True, integer=True)
        map_type = mapping.get("map_type", "roadmap")
        if map_type not in MAP_TYPES:
            errors["map_type"] = f"must be one of {', '.join(MAP_TYPES)}"
        filters = mapping.get("filters") or {}
        if not isinstance(filters, Mapping):
            errors["filters"] = "must be an object"
        layers = mapping.get("visible_layers", [])
        if not isinstance(layers, list) or not all(isinstance(layer, str) for layer in layers):
            errors["visible_layers"] = "must be a list of strings"
        is_public = _read_bool(mapping, "is_public", errors, path="is_public")

        if errors or center is None or zoom is None:
            raise ValidationError("Invalid request data", errors)
        return cls(
            owner_id=owner_id,
            name=name.strip(),
            description=description,
            center=center,
            zoom=int(zoom),
            map_type=map_type,
            filters=dict(filters),
            visible_layers=list(layers),
            is_public=bool(is_public),
        )


@dataclass(slots=True)
class ExportRequest:
    owner_id: str
    format: str
    search_criteria: Dict[str, Any]
    fields: List[str]
    delivery_method: str = "download"
    status: str = "processing"
    id: Optional[str] = None
    download_url: Optional[str] = None
    record_count: Optional[int] = None
    file_size: Optional[str] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True, slots=True)
class RouteOptimization:
    optimized_order: List[int]
    total_distance: float
    total_duration: int
    waypoints: List[Coordinate]
    exhaustive: bool


@dataclass(slots=True)
class DistanceMatrixCell:
    origin_index: int
    destination_index: int
    distance_m: Optional[int]
    duration_s: Optional[int]
    distance_text: str
    duration_text: str
    status: str

    @property
    def ok(self) -> bool:
        return self.status == "OK"


@dataclass(slots=True)
class RouteStep:
    instruction: str
    distance: str
    duration: str
    start_location: Coordinate
    end_location: Coordinate


@dataclass(slots=True)
class RoutePlan:
    stops: List[Business]
    order: List[int]
    total_distance_m: float
    estimated_duration_s: int
    total_distance_text: str
    estimated_time_text: str
    optimized: bool
    exhaustive: bool
    travel_mode: str
    waypoints: List[Coordinate]
    instructions: List[RouteStep]

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))
