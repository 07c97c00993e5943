"""HTTP entrypoint exposing brechó discovery and market intelligence (Cloud Run friendly)."""

from __future__ import annotations

import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from thriftscout.core.config import get_settings
from thriftscout.core.discovery import DEFAULT_AREA_RADIUS_M, DiscoveryService, build_service
from thriftscout.core.errors import ExportGenerationError, PersistenceError, UpstreamProviderError, ValidationError
from thriftscout.models import (
    TIMEFRAMES,
    BusinessFilters,
    MapBounds,
    MarketRegion,
    SearchCriteria,
    SearchLocation,
    parse_coordinate,
    to_jsonable,
)

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=4)
_service: Optional[DiscoveryService] = None


def get_service() -> DiscoveryService:
    global _service
    if _service is None:
        _service = build_service(executor=_executor)
    return _service


class MissingOwner(Exception):
    pass


def _owner_id() -> str:
    owner = (request.headers.get("X-Owner-Id") or "").strip()
    if not owner:
        raise MissingOwner()
    return owner


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid request data", {"body": "must be a JSON object"})
    return payload


def _query_float(name: str, errors: Dict[str, str]) -> Optional[float]:
    raw = request.args.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        errors[name] = "must be numeric"
        return None


# ---------- Errors ----------


@app.errorhandler(MissingOwner)
def _missing_owner(_exc: MissingOwner) -> Any:
    return jsonify({"error": "X-Owner-Id header is required"}), 401


@app.errorhandler(ValidationError)
def _validation_error(exc: ValidationError) -> Any:
    return jsonify(exc.to_dict()), 400


@app.errorhandler(UpstreamProviderError)
def _upstream_error(exc: UpstreamProviderError) -> Any:
    logger.error("Upstream provider failure: %s", exc)
    return jsonify({"error": "upstream provider failure", "status": exc.status}), 502


@app.errorhandler(ExportGenerationError)
def _export_error(exc: ExportGenerationError) -> Any:
    return jsonify({"error": "export failed", "export_id": exc.export_id, "details": exc.message}), 500


@app.errorhandler(PersistenceError)
def _persistence_error(exc: PersistenceError) -> Any:
    logger.error("Database failure: %s", exc)
    return jsonify({"error": "database failure"}), 500


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, never touches the database."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": getattr(settings, "worker_port", None),
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/brechos/search")
def search_brechos() -> Any:
    owner_id = _owner_id()
    criteria = SearchCriteria.from_payload(_json_body())
    response = get_service().search(criteria, owner_id)
    return jsonify({"data": response.to_dict()}), 200


@app.get("/brechos/analytics")
def market_analytics() -> Any:
    errors: Dict[str, str] = {}
    payload: Dict[str, Any] = {
        "city": request.args.get("city"),
        "state": request.args.get("state"),
        "lat": _query_float("lat", errors),
        "lng": _query_float("lng", errors),
        "radius": _query_float("radius", errors),
    }
    timeframe = request.args.get("timeframe", "90d")
    if timeframe not in TIMEFRAMES:
        errors["timeframe"] = f"must be one of {', '.join(TIMEFRAMES)}"
    if errors:
        raise ValidationError("Invalid request data", errors)

    region = MarketRegion.from_payload(payload)
    analytics = get_service().get_market_analytics(region, timeframe)
    return jsonify({"data": to_jsonable(analytics)}), 200


@app.get("/brechos/map-data")
def map_data() -> Any:
    raw_bounds = request.args.get("bounds")
    if not raw_bounds:
        raise ValidationError("Bounds parameter is required", {"bounds": "is required"})
    try:
        sw_lat, sw_lng, ne_lat, ne_lng = (float(part) for part in raw_bounds.split(","))
    except ValueError:
        raise ValidationError(
            "Invalid bounds", {"bounds": "must be swLat,swLng,neLat,neLng"}
        ) from None
    bounds = MapBounds.from_corners(sw_lat, sw_lng, ne_lat, ne_lng)

    raw_zoom = request.args.get("zoom", "10")
    try:
        zoom = int(raw_zoom)
    except ValueError:
        raise ValidationError("Invalid zoom", {"zoom": "must be an integer between 1 and 20"}) from None

    filters = None
    raw_filters = request.args.get("filters")
    if raw_filters:
        try:
            filters = BusinessFilters.from_payload(json.loads(raw_filters))
        except json.JSONDecodeError:
            raise ValidationError("Invalid filters", {"filters": "must be a JSON object"}) from None

    data = get_service().get_map_data(bounds, zoom, filters)
    return jsonify({"data": to_jsonable(data)}), 200


@app.post("/map-views")
def save_map_view() -> Any:
    owner_id = _owner_id()
    view = get_service().save_map_view(owner_id, _json_body())
    return jsonify({"data": view.to_dict()}), 201


@app.get("/map-views")
def list_map_views() -> Any:
    owner_id = _owner_id()
    views = get_service().list_map_views(owner_id)
    return jsonify({"data": [view.to_dict() for view in views]}), 200


@app.post("/brechos/export")
def export_brechos() -> Any:
    owner_id = _owner_id()
    payload = _json_body()
    criteria = SearchCriteria.from_payload(payload.get("search_criteria"))
    export = get_service().export_results(owner_id, criteria, payload.get("format"), payload.get("fields"))
    return jsonify({"data": export.to_dict()}), 200


@app.post("/brechos/route")
def plan_route() -> Any:
    payload = _json_body()
    errors: Dict[str, str] = {}
    start = parse_coordinate(payload.get("start_location"), "start_location", errors)
    business_ids = payload.get("business_ids")
    if not isinstance(business_ids, list) or not business_ids:
        errors["business_ids"] = "must be a non-empty list of ids"
    optimize = payload.get("optimize", True)
    if not isinstance(optimize, bool):
        errors["optimize"] = "must be a boolean"
    if errors or start is None:
        raise ValidationError("Invalid request data", errors)

    route = get_service().plan_route(business_ids, start, optimize, payload.get("travel_mode", "driving"))
    return jsonify({"data": route.to_dict()}), 200


@app.post("/brechos/area-analysis")
def area_analysis() -> Any:
    payload = _json_body()
    area = payload.get("area")
    if not isinstance(area, dict):
        raise ValidationError("Area parameter is required", {"area": "is required"})

    errors: Dict[str, str] = {}
    center = parse_coordinate(area.get("center"), "area.center", errors)
    radius = area.get("radius", DEFAULT_AREA_RADIUS_M)
    if isinstance(radius, bool) or not isinstance(radius, (int, float)):
        errors["area.radius"] = "must be numeric"
    include_competitors = payload.get("include_competitors", False)
    include_demographics = payload.get("include_demographics", False)
    for name, flag in (("include_competitors", include_competitors), ("include_demographics", include_demographics)):
        if not isinstance(flag, bool):
            errors[name] = "must be a boolean"
    if errors or center is None:
        raise ValidationError("Invalid area", errors)

    analysis = get_service().analyze_area(
        SearchLocation(lat=center.lat, lng=center.lng, radius=float(radius)),
        include_competitors=include_competitors,
        include_demographics=include_demographics,
    )
    return jsonify({"data": to_jsonable(analysis)}), 200


def main() -> None:
    """Cloud Run injects PORT; fall back to WORKER_PORT locally."""
    port = int(os.getenv("PORT") or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
