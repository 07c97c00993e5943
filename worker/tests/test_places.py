import pytest

from thriftscout.core import places
from thriftscout.models import SearchCriteria, SearchLocation
from thriftscout.vendors.google_places import GooglePlacesError

CRITERIA = SearchCriteria(location=SearchLocation(lat=-23.55, lng=-46.63, radius=5000))


def _record(n, name=None, types=("clothing_store",)):
    return {
        "place_id": f"p{n}",
        "name": name or f"Brechó {n}",
        "formatted_address": "São Paulo",
        "types": list(types),
        "geometry": {"location": {"lat": -23.55, "lng": -46.63}},
    }


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def provider(settings, sleeps):
    return places.PlaceProvider(settings, sleep=sleeps.append)


def test_build_search_query_joins_keywords():
    query = places.PlaceProvider.build_search_query()
    assert query.startswith("brechó OR brechós")
    assert "segunda mão" in query
    assert query.count(" OR ") == 6


def test_filter_requires_keyword_and_type():
    records = [
        _record(1),
        _record(2, name="Loja de Roupas Novas"),
        _record(3, name="Bazar Beneficente", types=("church",)),
        _record(4, name="Vintage Store", types=("point_of_interest",)),
    ]
    kept = places.PlaceProvider.filter_places_by_keywords(records)
    assert [r["place_id"] for r in kept] == ["p1", "p4"]


def test_search_with_pagination_follows_tokens(monkeypatch, provider, sleeps, settings):
    calls = []

    def fake_text_search(query, api_key, **kwargs):
        calls.append(kwargs.get("pagetoken"))
        if kwargs.get("pagetoken") is None:
            return {"status": "OK", "results": [_record(i) for i in range(20)], "next_page_token": "t2"}
        return {"status": "OK", "results": [_record(i) for i in range(20, 25)]}

    monkeypatch.setattr(places.google_places, "text_search", fake_text_search)

    results = provider.search_with_pagination(CRITERIA, max_results=60)

    assert len(results) == 25
    assert calls == [None, "t2"]
    assert sleeps == [settings.page_token_delay_seconds]


def test_search_with_pagination_caps_results(monkeypatch, provider):
    def fake_text_search(query, api_key, **kwargs):
        return {"status": "OK", "results": [_record(i) for i in range(20)], "next_page_token": "more"}

    monkeypatch.setattr(places.google_places, "text_search", fake_text_search)

    results = provider.search_with_pagination(CRITERIA, max_results=30)
    assert len(results) == 30


def test_first_page_failure_propagates(monkeypatch, provider):
    def failing(query, api_key, **kwargs):
        raise GooglePlacesError("denied", status="REQUEST_DENIED")

    monkeypatch.setattr(places.google_places, "text_search", failing)

    with pytest.raises(GooglePlacesError):
        provider.search_with_pagination(CRITERIA)


def test_later_page_failure_keeps_collected_results(monkeypatch, provider):
    def flaky(query, api_key, **kwargs):
        if kwargs.get("pagetoken"):
            raise GooglePlacesError("expired", status="INVALID_REQUEST")
        return {"status": "OK", "results": [_record(1), _record(2)], "next_page_token": "t2"}

    monkeypatch.setattr(places.google_places, "text_search", flaky)

    results = provider.search_with_pagination(CRITERIA)
    assert [r["place_id"] for r in results] == ["p1", "p2"]


def test_convert_fetches_details_and_limits_photos(monkeypatch, provider):
    details_calls = []

    def fake_details(place_id, api_key, fields=None, language=None):
        details_calls.append(place_id)
        return {
            "website": "https://brecho.example",
            "photos": [{"photo_reference": f"ref{i}"} for i in range(8)],
            "address_components": [{"long_name": "Pinheiros", "types": ["neighborhood"]}],
        }

    monkeypatch.setattr(places.google_places, "place_details", fake_details)

    business = provider.convert_to_business_model(_record(7))

    assert details_calls == ["p7"]
    assert len(business.media.photos) == 5
    assert "maxwidth=800" in business.media.photos[0]
    assert business.contact.website == "https://brecho.example"
    assert business.address.neighborhood == "Pinheiros"


def test_convert_uses_supplied_details(monkeypatch, provider):
    monkeypatch.setattr(
        places.google_places, "place_details", lambda *a, **k: pytest.fail("details should not be fetched")
    )
    business = provider.convert_to_business_model(_record(8), details={})
    assert business.place_id == "p8"


def test_search_returns_single_filtered_page(monkeypatch, provider, settings):
    seen = {}

    def fake_text_search(query, api_key, **kwargs):
        seen.update(kwargs)
        return {"status": "OK", "results": [_record(1), _record(2, name="Padaria")], "next_page_token": "ignored"}

    monkeypatch.setattr(places.google_places, "text_search", fake_text_search)

    results = provider.search(CRITERIA)

    assert [r["place_id"] for r in results] == ["p1"]
    assert seen["location"] == "-23.55,-46.63"
    assert seen["radius"] == 5000
    assert seen["language"] == settings.places_language
    assert seen["pagetoken"] is None
