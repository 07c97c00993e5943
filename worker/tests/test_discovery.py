import math
from datetime import timedelta
from pathlib import Path

import pytest

from thriftscout.core import discovery, geo, places
from thriftscout.core.analytics import AnalyticsService
from thriftscout.core.errors import ExportGenerationError, PersistenceError, ValidationError
from thriftscout.models import (
    BusinessFilters,
    Coordinate,
    MapBounds,
    MarketRegion,
    PopulationSample,
    SavedMapView,
    SearchCriteria,
    SearchLocation,
)

from conftest import NOW

SAO_PAULO = Coordinate(-23.5505, -46.6333)


class FakeRepository:
    """In-memory stand-in for the business cache; honours the freshness cut-off."""

    def __init__(self, businesses=()):
        self.businesses = {}
        self.upserts = []
        self.fail_on = set()
        for business in businesses:
            self.store(business)

    def store(self, business):
        if business.id is None:
            business.id = str(len(self.businesses) + 1)
        self.businesses[business.place_id] = business
        return business

    def find_within_bounds(self, box, updated_after=None):
        return [
            b
            for b in self.businesses.values()
            if box.contains(b.coordinates) and (updated_after is None or b.last_updated >= updated_after)
        ]

    def find_in_box_since(self, box, since):
        return [b for b in self.businesses.values() if box.contains(b.coordinates) and b.discovered_at >= since]

    def find_by_ids(self, ids):
        by_key = {}
        for b in self.businesses.values():
            by_key[b.place_id] = b
            by_key[b.id] = b
        return [by_key[i] for i in ids if i in by_key]

    def find_by_locality(self, city=None, state=None):
        return [
            b
            for b in self.businesses.values()
            if (not city or b.address.city.lower() == city.lower())
            and (not state or b.address.state.lower() == state.lower())
        ]

    def upsert_by_external_id(self, business):
        if business.place_id in self.fail_on:
            raise PersistenceError("constraint violated")
        self.upserts.append(business.place_id)
        existing = self.businesses.get(business.place_id)
        business.id = existing.id if existing else None
        return self.store(business)


class FakeSearchResults:
    def __init__(self, fail=False):
        self.records = []
        self.fail = fail

    def create_many(self, records):
        if self.fail:
            raise PersistenceError("log table missing")
        self.records.extend(records)
        return len(records)


class FakeMapViews:
    def __init__(self):
        self.views = []

    def create(self, view):
        view.id = str(len(self.views) + 1)
        self.views.append(view)
        return view

    def list_for(self, owner_id, include_public=True):
        return [v for v in self.views if v.owner_id == owner_id or (include_public and v.is_public)]


class FakeExports:
    def __init__(self):
        self.requests = {}
        self.updates = []

    def create(self, export):
        export.id = str(len(self.requests) + 1)
        self.requests[export.id] = export
        return export

    def update(self, export_id, patch):
        self.updates.append((export_id, patch))
        export = self.requests[export_id]
        for key, value in patch.items():
            setattr(export, key, value)
        return export


class ImmediateExecutor:
    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        fn(*args, **kwargs)


def _place(n, lat, lng):
    return {
        "place_id": f"gp-{n}",
        "name": f"Brechó Vintage {n}",
        "formatted_address": f"Rua {n}, São Paulo - SP",
        "types": ["clothing_store", "store"],
        "geometry": {"location": {"lat": lat, "lng": lng}},
        "rating": 3.0 + (n % 3),
        "user_ratings_total": n * 3,
    }


def _ring(count, center=SAO_PAULO, max_meters=4500):
    """Places spread on a spiral inside ``max_meters`` of ``center``."""
    points = []
    for i in range(count):
        meters = max_meters * (i + 1) / count
        angle = math.radians(i * 47)
        lat = center.lat + (meters * math.cos(angle)) / 111_320
        lng = center.lng + (meters * math.sin(angle)) / (111_320 * math.cos(math.radians(center.lat)))
        points.append(_place(i + 1, lat, lng))
    return points


@pytest.fixture
def google(monkeypatch):
    """Patch the Places client; ``google["places"]`` is what text search returns."""
    state = {"places": [], "text_calls": 0, "failing_details": set()}

    def fake_text_search(query, api_key, **kwargs):
        state["text_calls"] += 1
        return {"status": "OK", "results": state["places"]}

    def fake_details(place_id, api_key, fields=None, language=None):
        if place_id in state["failing_details"]:
            raise places.google_places.GooglePlacesError("not found", status="NOT_FOUND")
        return {"formatted_phone_number": "(11) 3333-0000"}

    monkeypatch.setattr(places.google_places, "text_search", fake_text_search)
    monkeypatch.setattr(places.google_places, "place_details", fake_details)
    return state


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def search_results():
    return FakeSearchResults()


@pytest.fixture
def exports():
    return FakeExports()


@pytest.fixture
def service(settings, repo, search_results, exports):
    return discovery.DiscoveryService(
        provider=places.PlaceProvider(settings, sleep=lambda seconds: None),
        repository=repo,
        search_results=search_results,
        map_views=FakeMapViews(),
        exports=exports,
        analytics=AnalyticsService(clock=lambda: NOW),
        settings=settings,
        clock=lambda: NOW,
    )


def _criteria(limit=20, page=1, radius=5000, filters=None, center=SAO_PAULO):
    return SearchCriteria(
        location=SearchLocation(lat=center.lat, lng=center.lng, radius=radius),
        filters=filters or BusinessFilters(),
        page=page,
        limit=limit,
    )


def test_search_end_to_end_fills_cache(service, google, repo, search_results):
    google["places"] = _ring(30)

    response = service.search(_criteria(limit=20), "owner-1")

    assert google["text_calls"] == 1
    assert len(repo.upserts) == 30
    assert response.metadata.cache_hit is False
    assert response.pagination.total == 30
    assert response.pagination.total_pages == 2
    assert len(response.businesses) == 20
    distances = [item.distance_from_center for item in response.businesses]
    assert distances == sorted(distances)
    assert all(d <= 5000 for d in distances)
    assert response.businesses[0].business.contact.phone_number == "(11) 3333-0000"
    assert [r.business_id for r in search_results.records] == [item.business.key for item in response.businesses]
    assert {r.search_id for r in search_results.records} == {response.metadata.search_id}


def test_search_completion_log_reports_provider_and_stored_counts(service, google, caplog):
    google["places"] = _ring(12)

    with caplog.at_level("INFO", logger="thriftscout.core.discovery"):
        service.search(_criteria(limit=5), "owner-1")

    done = [message for message in caplog.messages if " done: " in message]
    assert len(done) == 1
    assert "provider=12 stored=12" in done[0]


def test_second_page_returns_remaining(service, google):
    google["places"] = _ring(30)
    service.search(_criteria(limit=20), "owner-1")

    second = service.search(_criteria(limit=20, page=2), "owner-1")

    assert second.metadata.cache_hit is True
    assert len(second.businesses) == 10
    assert google["text_calls"] == 1


@pytest.mark.parametrize("age_hours,expect_hit", [(23, True), (25, False)])
def test_cache_freshness_window(service, google, repo, make_business, age_hours, expect_hit):
    repo.store(make_business(SAO_PAULO.lat, SAO_PAULO.lng, last_updated=NOW - timedelta(hours=age_hours)))
    google["places"] = _ring(3)

    response = service.search(_criteria(), "owner-1")

    assert response.metadata.cache_hit is expect_hit
    assert google["text_calls"] == (0 if expect_hit else 1)


def test_filters_are_conjunctive(service, repo, make_business, google):
    good = make_business(-23.551, -46.634, rating=4.6, review_count=50, website="https://a.example")
    repo.store(good)
    repo.store(make_business(-23.551, -46.634, rating=4.8, review_count=50, website=None))
    repo.store(make_business(-23.551, -46.634, rating=3.9, review_count=50, website="https://b.example"))
    repo.store(make_business(-23.551, -46.634, rating=4.7, review_count=2, website="https://c.example"))
    filters = BusinessFilters(min_rating=4.5, min_review_count=10, has_website=True)

    response = service.search(_criteria(filters=filters), "owner-1")

    assert [item.business.place_id for item in response.businesses] == [good.place_id]
    assert response.metadata.filters_applied == {"min_rating": 4.5, "min_review_count": 10, "has_website": True}


def test_partial_ingest_failures_are_skipped(service, google, repo):
    google["places"] = _ring(5)
    google["failing_details"] = {"gp-2"}
    repo.fail_on = {"gp-4"}

    response = service.search(_criteria(), "owner-1")

    assert response.pagination.total == 3
    assert {item.business.place_id for item in response.businesses} == {"gp-1", "gp-3", "gp-5"}


def test_first_page_provider_failure_propagates(service, monkeypatch):
    def failing(query, api_key, **kwargs):
        raise places.google_places.GooglePlacesError("denied", status="REQUEST_DENIED")

    monkeypatch.setattr(places.google_places, "text_search", failing)
    with pytest.raises(places.google_places.GooglePlacesError):
        service.search(_criteria(), "owner-1")


def test_search_logging_failures_do_not_fail_search(settings, repo, make_business, google):
    repo.store(make_business(SAO_PAULO.lat, SAO_PAULO.lng))
    executor = ImmediateExecutor()
    service = discovery.DiscoveryService(
        provider=places.PlaceProvider(settings, sleep=lambda seconds: None),
        repository=repo,
        search_results=FakeSearchResults(fail=True),
        map_views=FakeMapViews(),
        exports=FakeExports(),
        settings=settings,
        executor=executor,
        clock=lambda: NOW,
    )

    response = service.search(_criteria(), "owner-1")

    assert len(response.businesses) == 1
    assert executor.submitted == 1


def test_search_requires_location(service):
    with pytest.raises(ValidationError) as excinfo:
        service.search(SearchCriteria(location=None), "owner-1")
    assert excinfo.value.message == "Location is required for search"


def test_empty_search_does_not_log(service, google, search_results):
    response = service.search(_criteria(), "owner-1")
    assert response.businesses == []
    assert response.pagination.total_pages == 0
    assert search_results.records == []


def test_export_writes_file_and_completes(service, repo, make_business, exports, settings):
    repo.store(make_business(-23.551, -46.634, name="Sebo da Vila"))
    repo.store(make_business(-23.552, -46.635, name="Brechó Aurora", rating=None))

    export = service.export_results("owner-1", _criteria(), "csv", ["name", "rating"])

    assert export.status == "completed"
    assert export.record_count == 2
    path = Path(export.download_url[len("file://") :])
    assert path.parent == Path(settings.export_dir).resolve()
    assert path.name.startswith("brechos-export-2024-06-01T12-00-00-")
    assert path.suffix == ".csv"
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "#,Nome,Avaliação"
    assert lines[1] == "1,Sebo da Vila,4.0"
    assert lines[2] == "2,Brechó Aurora,N/A"
    assert export.expires_at == NOW + timedelta(hours=settings.export_ttl_hours)


def test_export_of_empty_result(service, exports, google):
    export = service.export_results("owner-1", _criteria(), "excel", None)
    path = Path(export.download_url[len("file://") :])
    assert path.suffix == ".xls"
    assert path.read_text(encoding="utf-8") == "Nenhum dado encontrado\n"
    assert export.record_count == 0


def test_export_failure_marks_request_failed(service, repo, exports, monkeypatch):
    def broken(box, updated_after=None):
        raise PersistenceError("db down")

    monkeypatch.setattr(repo, "find_within_bounds", broken)

    with pytest.raises(ExportGenerationError) as excinfo:
        service.export_results("owner-1", _criteria(), "csv", None)

    assert excinfo.value.export_id == "1"
    assert exports.updates[-1] == ("1", {"status": "failed", "error_message": "db down"})


def test_export_validates_before_creating_request(service, exports):
    with pytest.raises(ValidationError):
        service.export_results("owner-1", _criteria(), "pdf", None)
    assert exports.requests == {}


def test_market_analytics_for_region(service, repo, make_business):
    for i in range(3):
        repo.store(make_business(-23.55 + i * 0.001, -46.63, discovered_at=NOW - timedelta(days=200)))
    repo.store(make_business(-23.553, -46.63, discovered_at=NOW - timedelta(days=5)))
    repo.store(make_business(-22.90, -43.20, city="Rio de Janeiro"))

    result = service.get_market_analytics(MarketRegion(center=Coordinate(-23.55, -46.63), radius=5000), "90d")

    assert result["overview"]["total_businesses"] == 4
    assert result["trends"]["metrics"]["new_businesses"] == 1
    assert result["trends"]["metrics"]["business_growth_rate"] == pytest.approx(33.33)
    assert len(result["competitor_clusters"]) == 1
    assert result["timeframe"] == "90d"


def test_market_analytics_by_locality(service, repo, make_business):
    repo.store(make_business(-23.55, -46.63))
    repo.store(make_business(-22.90, -43.20, city="Rio de Janeiro"))

    result = service.get_market_analytics(MarketRegion(city="rio de janeiro"), "30d")

    assert result["overview"]["total_businesses"] == 1
    assert result["trends"]["metrics"]["business_growth_rate"] == 100.0


def test_map_data_clusters_below_marker_zoom(service, repo, make_business):
    for i in range(5):
        repo.store(make_business(-23.55 + i * 0.002, -46.63))
    bounds = MapBounds.from_corners(-23.60, -46.70, -23.50, -46.60)

    data = service.get_map_data(bounds, 10)

    assert data["markers"] == []
    assert sum(cluster.count for cluster in data["clusters"]) == 5
    assert data["analytics"]["density_heat_map"]
    assert data["total"] == 5


def test_map_data_markers_at_high_zoom(service, repo, make_business):
    repo.store(make_business(-23.55, -46.63, rating=4.9))
    repo.store(make_business(-23.55, -46.63, rating=2.0))
    bounds = MapBounds.from_corners(-23.60, -46.70, -23.50, -46.60)

    data = service.get_map_data(bounds, 14, BusinessFilters(min_rating=4))

    assert len(data["markers"]) == 1
    assert data["clusters"] == []
    assert data["analytics"] == {"density_heat_map": [], "market_gaps": []}


@pytest.mark.parametrize("zoom", [0, 21, "10", 10.5, True])
def test_map_data_rejects_bad_zoom(service, zoom):
    with pytest.raises(ValidationError):
        service.get_map_data(MapBounds.from_corners(-1, -1, 1, 1), zoom)


def test_save_map_view_assigns_share_token_only_when_public(service):
    payload = {"name": " Zona Sul ", "center": {"lat": -23.6, "lng": -46.7}, "zoom": 13, "is_public": True}

    public = service.save_map_view("owner-1", payload)
    private = service.save_map_view("owner-1", {**payload, "is_public": False})

    assert public.name == "Zona Sul"
    assert public.share_token and len(public.share_token) >= 16
    assert private.share_token is None
    assert [v.id for v in service.list_map_views("owner-2")] == [public.id]
    assert len(service.list_map_views("owner-1")) == 2


def test_save_map_view_leaves_callers_view_untouched(service):
    view = SavedMapView(owner_id="someone-else", name="Centro", center=Coordinate(-23.55, -46.63), zoom=12, is_public=True)

    saved = service.save_map_view("owner-1", view)

    assert saved is not view
    assert saved.owner_id == "owner-1"
    assert saved.share_token
    assert view.owner_id == "someone-else"
    assert view.share_token is None
    assert view.id is None


def test_save_map_view_validates(service):
    with pytest.raises(ValidationError) as excinfo:
        service.save_map_view("owner-1", {"name": "", "center": {"lat": 100, "lng": 0}, "zoom": 30})
    assert {"name", "center.lat", "zoom"} <= set(excinfo.value.details)


def test_plan_route_orders_stops(service, repo, make_business):
    far = repo.store(make_business(0.0, 0.03, id="far", name="Brechó Longe"))
    near = repo.store(make_business(0.0, 0.01, id="near", name="Brechó Perto"))

    plan = service.plan_route(["far", "near"], Coordinate(0, 0))

    assert [stop.key for stop in plan.stops] == ["near", "far"]
    assert plan.order == [1, 0]
    assert plan.optimized and plan.exhaustive
    assert plan.total_distance_m == pytest.approx(geo.distance(Coordinate(0, 0), far.coordinates), rel=1e-6)
    assert plan.instructions[0].instruction == "Siga para E até Brechó Perto"
    assert plan.instructions[0].distance == "1.1 km"
    assert plan.waypoints[0] == Coordinate(0, 0)
    assert plan.waypoints[1] == near.coordinates


def test_plan_route_without_optimisation_keeps_order(service, repo, make_business):
    repo.store(make_business(0.0, 0.03, id="far"))
    repo.store(make_business(0.0, 0.01, id="near"))

    plan = service.plan_route(["far", "near"], Coordinate(0, 0), optimize=False, travel_mode="walking")

    assert [stop.key for stop in plan.stops] == ["far", "near"]
    assert not plan.optimized
    expected = geo.path_length([Coordinate(0, 0), Coordinate(0.0, 0.03), Coordinate(0.0, 0.01)])
    assert plan.total_distance_m == pytest.approx(expected)
    assert plan.estimated_duration_s == geo.estimate_duration(expected, 1.39)


def test_plan_route_validation(service, repo):
    with pytest.raises(ValidationError):
        service.plan_route([], Coordinate(0, 0))
    with pytest.raises(ValidationError):
        service.plan_route(["x"], Coordinate(0, 0), travel_mode="flying")
    with pytest.raises(ValidationError):
        service.plan_route(["unknown"], Coordinate(0, 0))


def test_analyze_area(service, repo, make_business):
    repo.store(make_business(-23.5505, -46.6333, rating=4.8))
    repo.store(make_business(-23.5515, -46.6333, rating=4.6))
    repo.store(make_business(-23.70, -46.90))

    analysis = service.analyze_area(SearchLocation(lat=-23.5505, lng=-46.6333, radius=2000), include_competitors=True)

    metrics = analysis["market_metrics"]
    assert metrics["competitor_count"] == 2
    assert metrics["average_rating"] == 4.7
    assert metrics["competition_level"] == "low"
    assert metrics["density_estimated"] is True
    assert [c["distance"] for c in analysis["competitors"]] == ["0 m", "111 m"]
    assert analysis["demographics"] is None
    assert "Baixa concorrência na região" in analysis["recommendations"]
    assert analysis["area_info"]["name"] == "Área não identificada"


def test_analyze_area_demographics_from_population_data(settings, repo):
    service = discovery.DiscoveryService(
        provider=places.PlaceProvider(settings),
        repository=repo,
        search_results=FakeSearchResults(),
        map_views=FakeMapViews(),
        exports=FakeExports(),
        settings=settings,
        population_data=[PopulationSample(area="Sé", density=12000, coordinates=SAO_PAULO)],
        clock=lambda: NOW,
    )

    analysis = service.analyze_area(SearchLocation(lat=SAO_PAULO.lat, lng=SAO_PAULO.lng, radius=1000), include_demographics=True)

    assert analysis["demographics"]["area"] == "Sé"
    assert analysis["demographics"]["density_tier"] == "high"
    assert analysis["market_metrics"]["opportunity_score"] == 100
    assert "Nenhum brechó na área: mercado inexplorado" in analysis["recommendations"]


def test_analyze_area_rejects_radius(service):
    with pytest.raises(ValidationError):
        service.analyze_area(SearchLocation(lat=0, lng=0, radius=10))


def test_formatting_helpers():
    assert discovery.format_distance(849.6) == "850 m"
    assert discovery.format_distance(1234) == "1.2 km"
    assert discovery.format_duration(300) == "5 min"
    assert discovery.format_duration(3900) == "1h 05min"


def test_reverse_geocode_namer(monkeypatch, settings):
    def fake_reverse(lat, lng, api_key, language):
        return {"address_components": [{"long_name": "Pinheiros", "types": ["sublocality_level_1", "sublocality"]}]}

    monkeypatch.setattr(discovery.google_maps, "reverse_geocode", fake_reverse)
    assert discovery.reverse_geocode_namer(settings)(SAO_PAULO) == "Pinheiros"

    monkeypatch.setattr(discovery.google_maps, "reverse_geocode", lambda *a: None)
    assert discovery.reverse_geocode_namer(settings)(SAO_PAULO) is None
