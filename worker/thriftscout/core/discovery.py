"""Discovery service: cached brechó search plus the analytics, map, export and route operations built on it."""

import dataclasses
import logging
import math
import secrets
from concurrent.futures import Executor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from thriftscout.core import clustering, exporter, geo
from thriftscout.core.analytics import (
    GAP_RADIUS_M,
    AnalyticsService,
    calculate_opportunity_score,
    determine_competition_level,
    timeframe_start,
)
from thriftscout.core.config import Settings, get_settings
from thriftscout.core.context import SearchContext
from thriftscout.core.errors import (
    ExportGenerationError,
    PartialIngestFailure,
    PersistenceError,
    ValidationError,
)
from thriftscout.core.places import PlaceProvider
from thriftscout.core.repository import BusinessRepository, ExportStore, MapViewStore, SearchResultStore
from thriftscout.etl.transform import parse_address_components
from thriftscout.models import (
    MAX_RADIUS_M,
    MIN_RADIUS_M,
    TRAVEL_MODES,
    Business,
    BusinessFilters,
    Coordinate,
    ExportRequest,
    MapBounds,
    MarketRegion,
    Pagination,
    PopulationSample,
    RankedBusiness,
    RoutePlan,
    RouteStep,
    SavedMapView,
    SearchCriteria,
    SearchLocation,
    SearchMetadata,
    SearchResponse,
    SearchResultRecord,
)
from thriftscout.vendors import google_maps

logger = logging.getLogger(__name__)

# Average speeds in m/s
TRAVEL_SPEEDS = {"driving": geo.AVERAGE_SPEED_MPS, "transit": 8.33, "walking": 1.39}
DEFAULT_AREA_RADIUS_M = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{int(round(meters))} m"
    return f"{meters / 1000:.1f} km"


def format_duration(seconds: int) -> str:
    minutes = int(round(seconds / 60))
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h {rest:02d}min"


def reverse_geocode_namer(settings: Settings) -> Callable[[Coordinate], Optional[str]]:
    """Name a coordinate by its neighbourhood (or city) through reverse geocoding."""

    def _name(point: Coordinate) -> Optional[str]:
        result = google_maps.reverse_geocode(point.lat, point.lng, settings.google_api_key, settings.places_language)
        if not result:
            return None
        parts = parse_address_components(result.get("address_components", []))
        return parts["neighborhood"] or parts["city"]

    return _name


class DiscoveryService:
    def __init__(
        self,
        provider: Optional[PlaceProvider] = None,
        repository: Optional[BusinessRepository] = None,
        search_results: Optional[SearchResultStore] = None,
        map_views: Optional[MapViewStore] = None,
        exports: Optional[ExportStore] = None,
        analytics: Optional[AnalyticsService] = None,
        settings: Optional[Settings] = None,
        population_data: Optional[Sequence[PopulationSample]] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider or PlaceProvider(self.settings)
        self.repository = repository or BusinessRepository()
        self.search_results = search_results or SearchResultStore()
        self.map_views = map_views or MapViewStore()
        self.exports = exports or ExportStore()
        self.analytics = analytics or AnalyticsService(clock=clock)
        self.population_data = list(population_data) if population_data else None
        self._executor = executor
        self._clock = clock

    # ---------- Search ----------

    def search(self, criteria: SearchCriteria, owner_id: str) -> SearchResponse:
        """Cached search around ``criteria.location``, filtered, distance-sorted and paginated."""
        if criteria.location is None:
            raise ValidationError("Location is required for search", {"location": "is required"})
        criteria.validate()

        ctx = SearchContext(owner_id=owner_id)
        logger.info(
            "Search %s: owner=%s center=%s,%s radius=%s",
            ctx.search_id,
            owner_id,
            criteria.location.lat,
            criteria.location.lng,
            criteria.location.radius,
        )

        ranked = self._matching(criteria, ctx)
        total = len(ranked)
        start = (criteria.page - 1) * criteria.limit
        page = ranked[start : start + criteria.limit]

        self._log_results(ctx, criteria, page)

        response = SearchResponse(
            businesses=page,
            pagination=Pagination(
                page=criteria.page,
                limit=criteria.limit,
                total=total,
                total_pages=math.ceil(total / criteria.limit),
            ),
            metadata=SearchMetadata(
                search_id=ctx.search_id,
                search_center=criteria.location.center,
                radius=criteria.location.radius,
                filters_applied=criteria.filters.to_dict(),
                search_duration_ms=ctx.elapsed_ms(),
                cache_hit=ctx.cache_hit,
            ),
        )
        logger.info(
            "Search %s done: total=%d returned=%d cache_hit=%s provider=%d stored=%d skipped=%d duration_ms=%d",
            ctx.search_id,
            total,
            len(page),
            ctx.cache_hit,
            ctx.provider_results,
            ctx.stored,
            len(ctx.skipped),
            response.metadata.search_duration_ms,
        )
        return response

    def _matching(self, criteria: SearchCriteria, ctx: SearchContext) -> List[RankedBusiness]:
        """Every business matching ``criteria``, nearest first. Fills the cache on a miss."""
        center = criteria.location.center
        box = geo.bounding_box(center, criteria.location.radius)
        fresh_after = self._clock() - timedelta(hours=self.settings.cache_ttl_hours)

        businesses = self.repository.find_within_bounds(box, fresh_after)
        if businesses:
            ctx.cache_hit = True
            logger.info("Cache hit with %d businesses", len(businesses))
        else:
            businesses = self._fill_cache(criteria, ctx)

        filtered = criteria.filters.apply(businesses)
        ranked = [RankedBusiness(business=b, distance_from_center=geo.distance(center, b.coordinates)) for b in filtered]
        # list.sort is stable, ties keep repository order
        ranked.sort(key=lambda item: item.distance_from_center)
        return ranked

    def _fill_cache(self, criteria: SearchCriteria, ctx: SearchContext) -> List[Business]:
        places = self.provider.search_with_pagination(criteria, self.settings.max_provider_results)
        ctx.provider_results = len(places)
        logger.info("Fetched %d places from provider", len(places))

        now = self._clock()
        stored: List[Business] = []
        for place in places:
            place_id = place.get("place_id")
            try:
                business = self.provider.convert_to_business_model(place, now=now)
                stored.append(self.repository.upsert_by_external_id(business))
            except Exception as exc:  # noqa: BLE001
                failure = PartialIngestFailure(place_id, str(exc))
                ctx.skipped.append(failure)
                logger.warning("%s", failure)
        ctx.stored = len(stored)
        return stored

    def _log_results(self, ctx: SearchContext, criteria: SearchCriteria, page: List[RankedBusiness]) -> None:
        if not page:
            return
        records = [
            SearchResultRecord(
                search_id=ctx.search_id,
                business_id=item.business.key,
                owner_id=ctx.owner_id,
                search_center=criteria.location.center,
                search_radius=criteria.location.radius,
                filters_applied=criteria.filters.to_dict(),
                distance_from_center=item.distance_from_center,
            )
            for item in page
        ]

        def _write() -> None:
            try:
                self.search_results.create_many(records)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to log search results for %s: %s", ctx.search_id, exc)

        if self._executor is None:
            _write()
            return
        try:
            self._executor.submit(_write)
        except RuntimeError as exc:
            logger.error("Could not schedule search logging for %s: %s", ctx.search_id, exc)

    # ---------- Analytics ----------

    def get_market_analytics(self, region: MarketRegion, timeframe: str = "90d") -> Dict[str, Any]:
        start = timeframe_start(timeframe, self._clock())

        if region.center is not None:
            box = geo.bounding_box(region.center, region.radius)
            businesses = self.repository.find_within_bounds(box)
            if region.city:
                businesses = [b for b in businesses if b.address.city.lower() == region.city.lower()]
            if region.state:
                businesses = [b for b in businesses if b.address.state.lower() == region.state.lower()]
            recent = {b.key for b in self.repository.find_in_box_since(box, start)}
        else:
            businesses = self.repository.find_by_locality(region.city, region.state)
            recent = {b.key for b in businesses if b.discovered_at is not None and b.discovered_at >= start}

        historical = [b for b in businesses if b.key not in recent]
        logger.info(
            "Market analytics: region=%s/%s businesses=%d historical=%d timeframe=%s",
            region.city,
            region.state,
            len(businesses),
            len(historical),
            timeframe,
        )

        result = self.analytics.generate_market_analytics(businesses, region, self.population_data)
        result["trends"] = self.analytics.generate_trend_analysis(businesses, historical, timeframe)
        result["competitor_clusters"] = self.analytics.analyze_competitor_clusters(businesses)
        result["timeframe"] = timeframe
        return result

    # ---------- Map ----------

    def get_map_data(self, bounds: MapBounds, zoom: Any, filters: Optional[BusinessFilters] = None) -> Dict[str, Any]:
        if isinstance(zoom, bool) or not isinstance(zoom, int) or not 1 <= zoom <= 20:
            raise ValidationError("Invalid zoom", {"zoom": "must be an integer between 1 and 20"})

        box = bounds.normalized().to_box()
        businesses = self.repository.find_within_bounds(box)
        if filters is not None:
            businesses = filters.apply(businesses)

        data: Dict[str, Any] = {
            "bounds": box.to_dict(),
            "zoom": zoom,
            "total": len(businesses),
            "markers": [],
            "clusters": [],
            "analytics": {"density_heat_map": [], "market_gaps": []},
        }
        if zoom >= clustering.MARKER_ZOOM:
            data["markers"] = clustering.build_markers(businesses)
            return data

        center = box.center
        radius = geo.distance(box.southwest, box.northeast) / 2
        data["clusters"] = clustering.generate_clusters(businesses, zoom)
        data["analytics"] = {
            "density_heat_map": self.analytics.generate_density_heat_map(businesses),
            "market_gaps": self.analytics.identify_market_gaps(businesses, center, radius, self.population_data),
        }
        logger.info("Map data: zoom=%d businesses=%d clusters=%d", zoom, len(businesses), len(data["clusters"]))
        return data

    def save_map_view(self, owner_id: str, view: Any) -> SavedMapView:
        if not isinstance(view, SavedMapView):
            view = SavedMapView.from_payload(owner_id, view)
        token = secrets.token_urlsafe(16) if view.is_public else None
        view = dataclasses.replace(view, owner_id=owner_id, share_token=token)
        saved = self.map_views.create(view)
        logger.info("Saved map view %s for %s (public=%s)", saved.id, owner_id, saved.is_public)
        return saved

    def list_map_views(self, owner_id: str) -> List[SavedMapView]:
        return self.map_views.list_for(owner_id, include_public=True)

    # ---------- Export ----------

    def export_results(
        self,
        owner_id: str,
        criteria: SearchCriteria,
        fmt: str,
        fields: Optional[Sequence[str]] = None,
    ) -> ExportRequest:
        """Write every matching business to a file and return the completed request."""
        selected = exporter.validate_export(fmt, fields)
        if criteria.location is None:
            raise ValidationError("Location is required for search", {"location": "is required"})
        criteria.validate()

        request = self.exports.create(
            ExportRequest(owner_id=owner_id, format=fmt, search_criteria=criteria.to_dict(), fields=selected)
        )
        logger.info("Export %s started: owner=%s format=%s", request.id, owner_id, fmt)

        try:
            ranked = self._matching(criteria, SearchContext(owner_id=owner_id))
            content = exporter.serialize(exporter.project(ranked, selected), fmt)

            now = self._clock()
            export_dir = Path(self.settings.export_dir)
            export_dir.mkdir(parents=True, exist_ok=True)
            stamp = now.strftime("%Y-%m-%dT%H-%M-%S")
            path = export_dir / f"brechos-export-{stamp}-{request.id}.{exporter.file_extension(fmt)}"
            path.write_bytes(content)

            completed = self.exports.update(
                request.id,
                {
                    "status": "completed",
                    "download_url": path.resolve().as_uri(),
                    "record_count": len(ranked),
                    "file_size": exporter.human_size(len(content)),
                    "expires_at": now + timedelta(hours=self.settings.export_ttl_hours),
                },
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Export %s failed: %s", request.id, exc)
            try:
                self.exports.update(request.id, {"status": "failed", "error_message": str(exc)})
            except PersistenceError as update_exc:
                logger.error("Could not mark export %s as failed: %s", request.id, update_exc)
            raise ExportGenerationError(request.id, str(exc)) from exc

        logger.info("Export %s completed: records=%s size=%s", completed.id, completed.record_count, completed.file_size)
        return completed

    # ---------- Routes ----------

    def plan_route(
        self,
        business_ids: Sequence[str],
        start: Coordinate,
        optimize: bool = True,
        travel_mode: str = "driving",
    ) -> RoutePlan:
        """Visit order, straight-line distance and per-leg directions for a set of stored businesses."""
        errors: Dict[str, str] = {}
        if not business_ids or not all(isinstance(i, str) and i for i in business_ids):
            errors["business_ids"] = "must be a non-empty list of ids"
        if travel_mode not in TRAVEL_MODES:
            errors["travel_mode"] = f"must be one of {', '.join(TRAVEL_MODES)}"
        if errors:
            raise ValidationError("Invalid route request", errors)

        stops = self.repository.find_by_ids(list(dict.fromkeys(business_ids)))
        if not stops:
            raise ValidationError("No businesses found for route", {"business_ids": "no matching businesses"})
        if len(stops) < len(set(business_ids)):
            logger.warning("Route requested %d businesses, found %d", len(set(business_ids)), len(stops))

        points = [b.coordinates for b in stops]
        if optimize and len(stops) > 1:
            result = geo.optimize_route(start, points)
            order, total, exhaustive = result.optimized_order, result.total_distance, result.exhaustive
        else:
            order = list(range(len(stops)))
            total = geo.path_length([start, *points])
            exhaustive = False

        speed = TRAVEL_SPEEDS[travel_mode]
        ordered = [stops[i] for i in order]
        steps = []
        previous = start
        for stop in ordered:
            leg = geo.distance(previous, stop.coordinates)
            direction = geo.compass_point(geo.bearing(previous, stop.coordinates))
            steps.append(
                RouteStep(
                    instruction=f"Siga para {direction} até {stop.name}",
                    distance=format_distance(leg),
                    duration=format_duration(geo.estimate_duration(leg, speed)),
                    start_location=previous,
                    end_location=stop.coordinates,
                )
            )
            previous = stop.coordinates

        duration = geo.estimate_duration(total, speed)
        return RoutePlan(
            stops=ordered,
            order=order,
            total_distance_m=round(total, 2),
            estimated_duration_s=duration,
            total_distance_text=format_distance(total),
            estimated_time_text=format_duration(duration),
            optimized=optimize and len(stops) > 1,
            exhaustive=exhaustive,
            travel_mode=travel_mode,
            waypoints=[start, *(b.coordinates for b in ordered)],
            instructions=steps,
        )

    # ---------- Area analysis ----------

    def analyze_area(
        self,
        area: SearchLocation,
        include_competitors: bool = False,
        include_demographics: bool = False,
    ) -> Dict[str, Any]:
        if not MIN_RADIUS_M <= area.radius <= MAX_RADIUS_M:
            raise ValidationError("Invalid area", {"area.radius": f"must be between {MIN_RADIUS_M} and {MAX_RADIUS_M}"})

        center = area.center
        box = geo.bounding_box(center, area.radius)
        nearby = geo.filter_within_radius(
            center, self.repository.find_within_bounds(box), area.radius, key=lambda b: b.coordinates
        )
        nearby.sort(key=lambda pair: pair[1])
        businesses = [b for b, _ in nearby]

        tier, estimated = self.analytics.estimate_population_density(center, self.population_data)
        ratings = [b.info.rating for b in businesses if b.info.rating is not None]
        average_rating = round(sum(ratings) / len(ratings), 1) if ratings else 0.0
        local_competitors = sum(1 for _, meters in nearby if meters <= GAP_RADIUS_M)
        area_km2 = math.pi * (area.radius / 1000) ** 2

        analysis: Dict[str, Any] = {
            "area_info": {
                "name": self.analytics.area_name(center),
                "coordinates": center,
                "radius": area.radius,
            },
            "market_metrics": {
                "competitor_count": len(businesses),
                "average_rating": average_rating,
                "businesses_per_km2": round(len(businesses) / area_km2, 2),
                "competition_level": determine_competition_level(len(businesses)),
                "population_density": tier,
                "density_estimated": estimated,
                "opportunity_score": calculate_opportunity_score(local_competitors, tier, 20.0),
            },
            "competitors": None,
            "demographics": None,
            "recommendations": self._recommendations(len(businesses), average_rating, tier, estimated),
        }
        if include_competitors:
            analysis["competitors"] = [
                {
                    "id": b.key,
                    "name": b.name,
                    "distance": format_distance(meters),
                    "rating": b.info.rating,
                    "price_level": b.info.price_level,
                }
                for b, meters in nearby
            ]
        if include_demographics:
            analysis["demographics"] = self._demographics(center)
        return analysis

    def _demographics(self, center: Coordinate) -> Optional[Dict[str, Any]]:
        if not self.population_data:
            logger.info("Demographics requested but no population data is configured")
            return None
        nearest = min(self.population_data, key=lambda sample: geo.distance(center, sample.coordinates))
        tier, _ = self.analytics.estimate_population_density(center, [nearest])
        return {
            "area": nearest.area,
            "population_density": nearest.density,
            "density_tier": tier,
            "distance_m": round(geo.distance(center, nearest.coordinates)),
        }

    @staticmethod
    def _recommendations(count: int, average_rating: float, tier: str, estimated: bool) -> List[str]:
        recommendations = []
        if count == 0:
            recommendations.append("Nenhum brechó na área: mercado inexplorado")
        elif count <= 2:
            recommendations.append("Baixa concorrência na região")
        elif count <= 10:
            recommendations.append("Concorrência moderada")
        else:
            recommendations.append("Área saturada: diferenciação é essencial")

        if count and average_rating < 3.5:
            recommendations.append("Concorrentes mal avaliados: espaço para um atendimento melhor")
        elif average_rating >= 4.5:
            recommendations.append("Concorrentes muito bem avaliados: aposte em um nicho")

        if not estimated and tier == "high":
            recommendations.append("Alta densidade populacional favorece novas lojas")
        elif estimated:
            recommendations.append("Densidade populacional estimada: valide com dados demográficos")
        return recommendations


def build_service(settings: Optional[Settings] = None, executor: Optional[Executor] = None) -> DiscoveryService:
    """Wire the production collaborators together."""
    settings = settings or get_settings()
    namer = reverse_geocode_namer(settings) if settings.google_api_key else None
    return DiscoveryService(settings=settings, analytics=AnalyticsService(area_namer=namer), executor=executor)
