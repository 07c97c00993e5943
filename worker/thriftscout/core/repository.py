"""Postgres access for businesses, search logs, saved map views and export requests."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import extras

from thriftscout.core.db import get_connection
from thriftscout.core.errors import PersistenceError
from thriftscout.etl.transform import business_from_row, to_business_row
from thriftscout.models import (
    BoundingBox,
    Business,
    Coordinate,
    ExportRequest,
    SavedMapView,
    SearchResultRecord,
)

logger = logging.getLogger(__name__)


def _prepare_params(business: Business) -> Dict[str, Any]:
    params = to_business_row(business)
    params["business_hours"] = extras.Json(params["business_hours"])
    return params


def _box_predicate(box: BoundingBox) -> Tuple[str, Dict[str, Any]]:
    """SQL fragment restricting latitude/longitude to ``box``; wrapped boxes yield two ranges."""
    params: Dict[str, Any] = {"south": box.southwest.lat, "north": box.northeast.lat}
    ranges = []
    for index, (west, east) in enumerate(box.longitude_ranges()):
        params[f"west_{index}"] = west
        params[f"east_{index}"] = east
        ranges.append(f"longitude BETWEEN %(west_{index})s AND %(east_{index})s")
    clause = "latitude BETWEEN %(south)s AND %(north)s AND (" + " OR ".join(ranges) + ")"
    return clause, params


class BusinessRepository:
    """Cache of discovered businesses, keyed by Google ``place_id``."""

    def _fetch(self, sql: str, params: Any) -> List[Business]:
        try:
            with get_connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall()
        except psycopg2.Error as exc:
            logger.error("Business query failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        return [business_from_row(row) for row in rows]

    def find_within_bounds(self, box: BoundingBox, updated_after: Optional[datetime] = None) -> List[Business]:
        """Active businesses inside ``box``, optionally only those refreshed since ``updated_after``."""
        clause, params = _box_predicate(box)
        sql = f"SELECT * FROM brecho_businesses WHERE is_active AND {clause}"
        if updated_after is not None:
            sql += " AND last_updated >= %(updated_after)s"
            params["updated_after"] = updated_after
        return self._fetch(sql + " ORDER BY id", params)

    def find_in_box_since(self, box: BoundingBox, since: datetime) -> List[Business]:
        clause, params = _box_predicate(box)
        params["since"] = since
        sql = f"SELECT * FROM brecho_businesses WHERE is_active AND {clause} AND discovered_at >= %(since)s ORDER BY id"
        return self._fetch(sql, params)

    def find_by_ids(self, ids: Sequence[str]) -> List[Business]:
        """Businesses matching ``ids`` (internal id or place_id), returned in request order."""
        if not ids:
            return []
        keys = [str(value) for value in ids]
        sql = "SELECT * FROM brecho_businesses WHERE id::text = ANY(%(ids)s) OR place_id = ANY(%(ids)s)"
        found = self._fetch(sql, {"ids": keys})
        by_key: Dict[str, Business] = {}
        for business in found:
            by_key[business.place_id] = business
            if business.id:
                by_key[business.id] = business
        return [by_key[key] for key in keys if key in by_key]

    def find_by_locality(self, city: Optional[str] = None, state: Optional[str] = None) -> List[Business]:
        conditions = ["is_active"]
        params: Dict[str, Any] = {}
        if city:
            conditions.append("LOWER(city) = LOWER(%(city)s)")
            params["city"] = city
        if state:
            conditions.append("LOWER(state) = LOWER(%(state)s)")
            params["state"] = state
        sql = "SELECT * FROM brecho_businesses WHERE " + " AND ".join(conditions) + " ORDER BY id"
        return self._fetch(sql, params)

    def upsert_by_external_id(self, business: Business) -> Business:
        """Create or refresh a business by ``place_id`` and return the stored row."""
        params = _prepare_params(business)
        if not params["place_id"] or not params["name"]:
            raise ValueError("place_id and name are required for upsert")

        try:
            with get_connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(_UPSERT_BUSINESS, params)
                    row = cur.fetchone()
                conn.commit()
        except psycopg2.Error as exc:
            logger.error("Failed to upsert business %s: %s", params["place_id"], exc)
            raise PersistenceError(str(exc)) from exc
        logger.debug("Upserted business %s", params["place_id"])
        return business_from_row(row)


_UPSERT_BUSINESS = """
INSERT INTO brecho_businesses (
    place_id,
    name,
    formatted_address,
    street_number,
    route,
    neighborhood,
    city,
    state,
    postal_code,
    latitude,
    longitude,
    phone_number,
    website,
    facebook_url,
    instagram_url,
    rating,
    review_count,
    price_level,
    categories,
    is_open_now,
    business_hours,
    photos,
    profile_image,
    discovered_at,
    last_updated,
    is_active,
    data_source
) VALUES (
    %(place_id)s,
    %(name)s,
    %(formatted_address)s,
    %(street_number)s,
    %(route)s,
    %(neighborhood)s,
    %(city)s,
    %(state)s,
    %(postal_code)s,
    %(latitude)s,
    %(longitude)s,
    %(phone_number)s,
    %(website)s,
    %(facebook_url)s,
    %(instagram_url)s,
    %(rating)s,
    %(review_count)s,
    %(price_level)s,
    %(categories)s,
    %(is_open_now)s,
    %(business_hours)s,
    %(photos)s,
    %(profile_image)s,
    COALESCE(%(discovered_at)s, NOW()),
    NOW(),
    TRUE,
    'google-places'
)
ON CONFLICT (place_id) DO UPDATE SET
    name = EXCLUDED.name,
    formatted_address = EXCLUDED.formatted_address,
    street_number = EXCLUDED.street_number,
    route = EXCLUDED.route,
    neighborhood = EXCLUDED.neighborhood,
    city = EXCLUDED.city,
    state = EXCLUDED.state,
    postal_code = EXCLUDED.postal_code,
    latitude = EXCLUDED.latitude,
    longitude = EXCLUDED.longitude,
    phone_number = EXCLUDED.phone_number,
    website = EXCLUDED.website,
    rating = EXCLUDED.rating,
    review_count = EXCLUDED.review_count,
    price_level = EXCLUDED.price_level,
    categories = EXCLUDED.categories,
    is_open_now = EXCLUDED.is_open_now,
    business_hours = EXCLUDED.business_hours,
    photos = EXCLUDED.photos,
    profile_image = EXCLUDED.profile_image,
    is_active = TRUE,
    last_updated = GREATEST(NOW(), brecho_businesses.last_updated)
RETURNING *;
"""


class SearchResultStore:
    """Append-only log of which businesses each search returned."""

    _INSERT = """
    INSERT INTO brecho_search_results (
        search_id,
        business_id,
        owner_id,
        search_lat,
        search_lng,
        search_radius,
        filters_applied,
        distance_from_center
    ) VALUES (
        %(search_id)s,
        %(business_id)s,
        %(owner_id)s,
        %(search_lat)s,
        %(search_lng)s,
        %(search_radius)s,
        %(filters_applied)s,
        %(distance_from_center)s
    )
    """

    def create_many(self, records: Iterable[SearchResultRecord]) -> int:
        params = [
            {
                "search_id": record.search_id,
                "business_id": record.business_id,
                "owner_id": record.owner_id,
                "search_lat": record.search_center.lat,
                "search_lng": record.search_center.lng,
                "search_radius": record.search_radius,
                "filters_applied": extras.Json(record.filters_applied),
                "distance_from_center": record.distance_from_center,
            }
            for record in records
        ]
        if not params:
            return 0
        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    extras.execute_batch(cur, self._INSERT, params)
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceError(str(exc)) from exc
        return len(params)


def _view_from_row(row: Dict[str, Any]) -> SavedMapView:
    return SavedMapView(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        name=row["name"],
        description=row.get("description"),
        center=Coordinate(lat=float(row["center_lat"]), lng=float(row["center_lng"])),
        zoom=int(row["zoom"]),
        map_type=row.get("map_type") or "roadmap",
        filters=dict(row.get("filters") or {}),
        visible_layers=list(row.get("visible_layers") or []),
        is_public=bool(row.get("is_public")),
        share_token=row.get("share_token"),
        created_at=row.get("created_at"),
    )


class MapViewStore:
    _INSERT = """
    INSERT INTO brecho_map_views (
        owner_id,
        name,
        description,
        center_lat,
        center_lng,
        zoom,
        map_type,
        filters,
        visible_layers,
        is_public,
        share_token,
        created_at
    ) VALUES (
        %(owner_id)s,
        %(name)s,
        %(description)s,
        %(center_lat)s,
        %(center_lng)s,
        %(zoom)s,
        %(map_type)s,
        %(filters)s,
        %(visible_layers)s,
        %(is_public)s,
        %(share_token)s,
        NOW()
    )
    RETURNING *;
    """

    def create(self, view: SavedMapView) -> SavedMapView:
        params = {
            "owner_id": view.owner_id,
            "name": view.name,
            "description": view.description,
            "center_lat": view.center.lat,
            "center_lng": view.center.lng,
            "zoom": view.zoom,
            "map_type": view.map_type,
            "filters": extras.Json(view.filters),
            "visible_layers": list(view.visible_layers),
            "is_public": view.is_public,
            "share_token": view.share_token,
        }
        try:
            with get_connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(self._INSERT, params)
                    row = cur.fetchone()
                conn.commit()
        except psycopg2.Error as exc:
            logger.error("Failed to save map view %s for %s: %s", view.name, view.owner_id, exc)
            raise PersistenceError(str(exc)) from exc
        return _view_from_row(row)

    def list_for(self, owner_id: str, include_public: bool = True) -> List[SavedMapView]:
        """Views owned by ``owner_id`` plus, optionally, every public view. Newest first."""
        sql = (
            "SELECT * FROM brecho_map_views"
            " WHERE owner_id = %(owner_id)s OR (%(include_public)s AND is_public)"
            " ORDER BY created_at DESC"
        )
        try:
            with get_connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, {"owner_id": owner_id, "include_public": include_public})
                    rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise PersistenceError(str(exc)) from exc
        return [_view_from_row(row) for row in rows]


_EXPORT_COLUMNS = (
    "status",
    "download_url",
    "record_count",
    "file_size",
    "expires_at",
    "error_message",
)


def _export_from_row(row: Dict[str, Any]) -> ExportRequest:
    return ExportRequest(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        format=row["format"],
        search_criteria=dict(row.get("search_criteria") or {}),
        fields=list(row.get("fields") or []),
        delivery_method=row.get("delivery_method") or "download",
        status=row["status"],
        download_url=row.get("download_url"),
        record_count=row.get("record_count"),
        file_size=row.get("file_size"),
        expires_at=row.get("expires_at"),
        error_message=row.get("error_message"),
        created_at=row.get("created_at"),
    )


class ExportStore:
    _INSERT = """
    INSERT INTO brecho_export_requests (
        owner_id,
        format,
        search_criteria,
        fields,
        delivery_method,
        status,
        created_at
    ) VALUES (
        %(owner_id)s,
        %(format)s,
        %(search_criteria)s,
        %(fields)s,
        %(delivery_method)s,
        %(status)s,
        NOW()
    )
    RETURNING *;
    """

    def _execute_returning(self, sql: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with get_connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, params)
                    row = cur.fetchone()
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceError(str(exc)) from exc
        if row is None:
            raise PersistenceError(f"export request {params.get('id')} not found")
        return row

    def create(self, export: ExportRequest) -> ExportRequest:
        params = {
            "owner_id": export.owner_id,
            "format": export.format,
            "search_criteria": extras.Json(export.search_criteria),
            "fields": list(export.fields),
            "delivery_method": export.delivery_method,
            "status": export.status,
        }
        return _export_from_row(self._execute_returning(self._INSERT, params))

    def update(self, export_id: str, patch: Dict[str, Any]) -> ExportRequest:
        unknown = set(patch) - set(_EXPORT_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update export columns: {', '.join(sorted(unknown))}")
        if not patch:
            raise ValueError("patch must not be empty")
        assignments = ", ".join(f"{column} = %({column})s" for column in _EXPORT_COLUMNS if column in patch)
        sql = f"UPDATE brecho_export_requests SET {assignments} WHERE id = %(id)s RETURNING *;"
        return _export_from_row(self._execute_returning(sql, {**patch, "id": export_id}))
