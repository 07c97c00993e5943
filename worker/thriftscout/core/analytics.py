"""Market analytics over in-memory business collections.

Everything here is a pure pass over the businesses handed in, except the optional
``area_namer`` used to label market gaps. Population density is only ever read from
caller supplied ``PopulationSample`` values; without them a fixed, non-authoritative
"medium" tier is used and flagged as estimated.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from thriftscout.core import geo
from thriftscout.core.errors import ValidationError
from thriftscout.models import (
    TIMEFRAMES,
    Business,
    Coordinate,
    CompetitorCluster,
    DensityPoint,
    MarketGap,
    MarketRegion,
    PopulationSample,
)

logger = logging.getLogger(__name__)

HEAT_MAP_GRID_DEGREES = 0.01
HEAT_MAP_CELL_RADIUS_M = 1000
GAP_GRID_DEGREES = 0.02
GAP_RADIUS_M = 2000
GAP_SCORE_THRESHOLD = 60
MAX_GAPS = 10
CLUSTER_RADIUS_M = 1500
UNDERSERVED_THRESHOLD = 10
EMERGING_WINDOW_DAYS = 90
EMERGING_MIN_RATING = 4.0
# Grid scans are coarsened beyond this many points.
MAX_GRID_POINTS = 10_000

UNKNOWN_AREA = "Área não identificada"
FALLBACK_DENSITY_TIER = "medium"

_TIMEFRAME_DAYS = {"30d": 30, "90d": 90, "1y": 365}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rated(businesses: Sequence[Business]) -> List[float]:
    return [b.info.rating for b in businesses if b.info.rating is not None]


def _mean_rating(businesses: Sequence[Business]) -> float:
    ratings = _rated(businesses)
    return sum(ratings) / len(ratings) if ratings else 0.0


def _centroid(businesses: Sequence[Business]) -> Coordinate:
    return Coordinate(
        lat=sum(b.coordinates.lat for b in businesses) / len(businesses),
        lng=sum(b.coordinates.lng for b in businesses) / len(businesses),
    )


def _grid_axis(start: float, stop: float, step: float) -> List[float]:
    """Evenly spaced values from ``start`` up to ``stop`` inclusive."""
    count = int(math.floor((stop - start) / step + 1e-9)) + 1
    return [start + i * step for i in range(max(count, 1))]


def _fit_grid(south: float, west: float, north: float, east: float, step: float) -> float:
    cells = ((north - south) / step + 1) * ((east - west) / step + 1)
    if cells <= MAX_GRID_POINTS:
        return step
    coarser = math.sqrt((north - south + step) * (east - west + step) / MAX_GRID_POINTS)
    logger.debug("Coarsening grid from %.4f to %.4f degrees", step, coarser)
    return max(step, coarser)


def population_tier(density: float) -> str:
    if density > 1000:
        return "high"
    if density > 500:
        return "medium"
    return "low"


def determine_competition_level(business_count: int) -> str:
    if business_count <= 2:
        return "low"
    if business_count <= 5:
        return "medium"
    if business_count <= 10:
        return "high"
    return "saturated"


def calculate_opportunity_score(competitor_count: int, density_tier: str, accessibility: float) -> float:
    """Density (up to 40) plus competitor scarcity (up to 40) plus accessibility (up to 20)."""
    score = {"high": 40, "medium": 25}.get(density_tier, 10)
    if competitor_count == 0:
        score += 40
    elif competitor_count <= 2:
        score += 30
    elif competitor_count <= 5:
        score += 15
    score += min(20.0, max(0.0, accessibility))
    return float(min(100.0, max(0.0, score)))


def accessibility_factor(point: Coordinate, center: Coordinate, radius_m: float) -> float:
    """Placeholder accessibility: 20 at the target centre, falling linearly to 0 at its edge."""
    if radius_m <= 0:
        return 20.0
    return 20.0 * (1 - min(1.0, geo.distance(point, center) / radius_m))


def gap_reasons(competitor_count: int, density_tier: str) -> List[str]:
    reasons = []
    if competitor_count == 0:
        reasons.append("Nenhum concorrente direto na área")
    elif competitor_count <= 2:
        reasons.append("Baixa concorrência na região")

    if density_tier == "high":
        reasons.append("Alta densidade populacional")
    elif density_tier == "medium":
        reasons.append("Densidade populacional moderada")

    reasons.append("Área com potencial de crescimento")
    return reasons


def trend_insights(new_businesses: int, growth_rate: float, rating_trend: float, total: int) -> List[str]:
    insights = []
    if new_businesses > total * 0.1:
        insights.append("Mercado em forte expansão com muitos novos negócios")
    elif new_businesses > 0:
        insights.append("Crescimento moderado do mercado")

    if growth_rate > 20:
        insights.append("Taxa de crescimento elevada indica mercado aquecido")
    elif growth_rate < -10:
        insights.append("Possível retração do mercado")

    if rating_trend > 0.2:
        insights.append("Melhoria na qualidade geral dos serviços")
    elif rating_trend < -0.2:
        insights.append("Declínio na satisfação dos clientes")

    if not insights:
        insights.append("Mercado estável sem mudanças significativas")
    return insights


def timeframe_start(timeframe: str, now: datetime) -> datetime:
    if timeframe not in _TIMEFRAME_DAYS:
        raise ValidationError("Invalid timeframe", {"timeframe": f"must be one of {', '.join(TIMEFRAMES)}"})
    return now - timedelta(days=_TIMEFRAME_DAYS[timeframe])


class AnalyticsService:
    """Overview, density, market-gap, competitor and trend analytics."""

    def __init__(
        self,
        area_namer: Optional[Callable[[Coordinate], Optional[str]]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._area_namer = area_namer
        self._clock = clock

    # ---------- Population ----------

    @staticmethod
    def estimate_population_density(
        point: Coordinate,
        population_data: Optional[Sequence[PopulationSample]] = None,
    ) -> Tuple[str, bool]:
        """Return ``(tier, estimated)`` from the nearest sample, or the fallback tier."""
        if population_data:
            nearest = min(population_data, key=lambda sample: geo.distance(point, sample.coordinates))
            return population_tier(nearest.density), False
        return FALLBACK_DENSITY_TIER, True

    # ---------- Overview ----------

    def generate_market_analytics(
        self,
        businesses: Sequence[Business],
        region: Optional[MarketRegion] = None,
        population_data: Optional[Sequence[PopulationSample]] = None,
    ) -> Dict[str, Any]:
        logger.info("Generating market analytics for %d businesses", len(businesses))
        analytics = {
            "overview": self._overview(businesses, region),
            "geographic": self._geographic(businesses, population_data),
            "competitive": self._competitive(businesses),
        }
        logger.info(
            "Market analytics ready: neighborhoods=%d, underserved=%d",
            len(analytics["geographic"]["density_by_neighborhood"]),
            len(analytics["geographic"]["underserved_areas"]),
        )
        return analytics

    @staticmethod
    def _overview(businesses: Sequence[Business], region: Optional[MarketRegion]) -> Dict[str, Any]:
        total = len(businesses)
        ratings = _rated(businesses)
        distribution = {str(bucket): 0 for bucket in range(1, 6)}
        for rating in ratings:
            bucket = math.floor(rating)
            if 1 <= bucket <= 5:
                distribution[str(bucket)] += 1

        # businesses per 100 km²; a locality-only region has no area, so 100 km² is assumed
        if region is not None and region.center is not None and region.radius > 0:
            area_km2 = math.pi * (region.radius / 1000) ** 2
            density_score = total / (area_km2 / 100)
        else:
            density_score = total / 100
        if density_score > 10:
            competition = "HIGH"
        elif density_score > 5:
            competition = "MEDIUM"
        else:
            competition = "LOW"

        return {
            "total_businesses": total,
            "average_rating": round(sum(ratings) / len(ratings), 1) if ratings else 0.0,
            "density_score": round(density_score, 1),
            "competition_level": competition,
            "total_reviews": sum(b.info.review_count or 0 for b in businesses),
            "rating_distribution": distribution,
        }

    def _geographic(
        self,
        businesses: Sequence[Business],
        population_data: Optional[Sequence[PopulationSample]],
    ) -> Dict[str, Any]:
        groups: Dict[str, List[Business]] = {}
        for business in businesses:
            key = business.address.neighborhood or business.address.city or "Unknown"
            groups.setdefault(key, []).append(business)

        by_neighborhood = sorted(
            (
                {"name": name, "count": len(members), "avg_rating": round(_mean_rating(members), 1)}
                for name, members in groups.items()
            ),
            key=lambda entry: entry["count"],
            reverse=True,
        )

        underserved = []
        for name, members in groups.items():
            if len(members) >= UNDERSERVED_THRESHOLD:
                continue
            tier, estimated = self.estimate_population_density(_centroid(members), population_data)
            underserved.append(
                {
                    "name": name,
                    "business_count": len(members),
                    "population_density": tier,
                    "density_estimated": estimated,
                }
            )
        underserved.sort(key=lambda entry: entry["business_count"])

        return {"density_by_neighborhood": by_neighborhood, "underserved_areas": underserved}

    def _competitive(self, businesses: Sequence[Business]) -> Dict[str, Any]:
        top_rated = sorted(
            (b for b in businesses if b.info.rating is not None),
            key=lambda b: b.info.rating,
            reverse=True,
        )
        leaders = sorted(
            (b for b in businesses if b.info.review_count),
            key=lambda b: b.info.review_count,
            reverse=True,
        )
        cutoff = self._clock() - timedelta(days=EMERGING_WINDOW_DAYS)
        emerging = [
            b
            for b in businesses
            if b.discovered_at is not None
            and b.discovered_at > cutoff
            and (b.info.rating or 0) >= EMERGING_MIN_RATING
        ]
        return {
            "top_rated_businesses": top_rated[:10],
            "market_leaders": leaders[:5],
            "emerging_competitors": emerging[:10],
        }

    # ---------- Density ----------

    def generate_density_heat_map(
        self,
        businesses: Sequence[Business],
        grid_size: float = HEAT_MAP_GRID_DEGREES,
    ) -> List[DensityPoint]:
        """Grid over the businesses' extent; each point weighs the businesses within 1 km."""
        if grid_size <= 0:
            raise ValueError("grid_size must be positive")
        if not businesses:
            return []

        lats = [b.coordinates.lat for b in businesses]
        lngs = [b.coordinates.lng for b in businesses]
        south, north, west, east = min(lats), max(lats), min(lngs), max(lngs)
        step = _fit_grid(south, west, north, east, grid_size)

        points: List[DensityPoint] = []
        for lat in _grid_axis(south, north, step):
            for lng in _grid_axis(west, east, step):
                cell = Coordinate(lat=lat, lng=lng)
                nearby = [b for b in businesses if geo.within_radius(cell, b.coordinates, HEAT_MAP_CELL_RADIUS_M)]
                if nearby:
                    points.append(
                        DensityPoint(
                            coordinates=cell,
                            weight=len(nearby),
                            business_count=len(nearby),
                            average_rating=_mean_rating(nearby),
                        )
                    )
        logger.debug("Density heat map has %d points", len(points))
        return points

    # ---------- Market gaps ----------

    def area_name(self, point: Coordinate) -> str:
        if self._area_namer is None:
            return UNKNOWN_AREA
        try:
            return self._area_namer(point) or UNKNOWN_AREA
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not name area at %s,%s: %s", point.lat, point.lng, exc)
            return UNKNOWN_AREA

    def identify_market_gaps(
        self,
        businesses: Sequence[Business],
        center: Coordinate,
        radius: float,
        population_data: Optional[Sequence[PopulationSample]] = None,
    ) -> List[MarketGap]:
        """Scan a ~2 km grid over the target area and keep the ten best cells scoring >= 60."""
        box = geo.bounding_box(center, radius)
        step = _fit_grid(box.southwest.lat, box.southwest.lng, box.northeast.lat, box.northeast.lng, GAP_GRID_DEGREES)

        candidates: List[MarketGap] = []
        for lat in _grid_axis(box.southwest.lat, box.northeast.lat, step):
            for raw_lng in _grid_axis(box.southwest.lng, box.northeast.lng, step):
                lng = ((raw_lng + 180) % 360) - 180 if not -180 <= raw_lng <= 180 else raw_lng
                cell = Coordinate(lat=lat, lng=lng)
                competitors = sum(1 for b in businesses if geo.within_radius(cell, b.coordinates, GAP_RADIUS_M))
                tier, estimated = self.estimate_population_density(cell, population_data)
                score = calculate_opportunity_score(competitors, tier, accessibility_factor(cell, center, radius))
                if score >= GAP_SCORE_THRESHOLD:
                    candidates.append(
                        MarketGap(
                            center=cell,
                            radius=GAP_RADIUS_M,
                            population_density=tier,
                            competitor_count=competitors,
                            opportunity_score=round(score, 2),
                            reasons=gap_reasons(competitors, tier),
                            density_estimated=estimated,
                        )
                    )

        candidates.sort(key=lambda gap: gap.opportunity_score, reverse=True)
        gaps = candidates[:MAX_GAPS]
        for gap in gaps:
            gap.name = self.area_name(gap.center)
        logger.info("Identified %d market gaps out of %d candidates", len(gaps), len(candidates))
        return gaps

    # ---------- Competitors ----------

    def analyze_competitor_clusters(
        self,
        businesses: Sequence[Business],
        cluster_radius: float = CLUSTER_RADIUS_M,
    ) -> List[CompetitorCluster]:
        """Greedy radius grouping; once a business joins a cluster it is never reassigned."""
        assigned = set()
        clusters: List[CompetitorCluster] = []
        for index, seed in enumerate(businesses):
            if index in assigned:
                continue
            members_idx = [
                other_index
                for other_index, other in enumerate(businesses)
                if other_index not in assigned and geo.within_radius(seed.coordinates, other.coordinates, cluster_radius)
            ]
            if len(members_idx) < 2:
                continue

            members = [businesses[i] for i in members_idx]
            assigned.update(members_idx)
            total_reviews = sum(b.info.review_count or 0 for b in members)
            shares: Dict[str, float] = {}
            if total_reviews:
                for member in members:
                    weight = (member.info.review_count or 0) * (member.info.rating or 0)
                    shares[member.key] = weight / (total_reviews * 5) * 100
            clusters.append(
                CompetitorCluster(
                    center=_centroid(members),
                    businesses=members,
                    average_rating=sum(b.info.rating or 0 for b in members) / len(members),
                    total_reviews=total_reviews,
                    competition_level=determine_competition_level(len(members)),
                    market_share=sum(shares.values()),
                    shares=shares,
                )
            )

        clusters.sort(key=lambda cluster: len(cluster.businesses), reverse=True)
        logger.debug("Found %d competitor clusters", len(clusters))
        return clusters

    # ---------- Trends ----------

    def generate_trend_analysis(
        self,
        current: Sequence[Business],
        historical: Optional[Sequence[Business]] = None,
        timeframe: str = "90d",
    ) -> Dict[str, Any]:
        now = self._clock()
        start = timeframe_start(timeframe, now)

        new_businesses = sum(1 for b in current if b.discovered_at is not None and b.discovered_at >= start)

        if historical is None:
            growth_rate = 0.0
        elif not historical:
            growth_rate = 100.0 if current else 0.0
        else:
            growth_rate = (len(current) - len(historical)) / len(historical) * 100

        current_rating = _mean_rating(current)
        historical_rating = _mean_rating(historical) if historical else current_rating
        rating_trend = current_rating - historical_rating

        return {
            "period": {"start": start, "end": now},
            "metrics": {
                "new_businesses": new_businesses,
                "business_growth_rate": round(growth_rate, 2),
                "average_rating_trend": round(rating_trend, 2),
                "review_velocity_trend": 0,
            },
            "insights": trend_insights(new_businesses, growth_rate, rating_trend, len(current)),
        }
