"""Field projection and CSV / Excel-compatible serialisation of search results."""

import csv
import io
from typing import Any, Callable, Dict, List, Optional, Sequence

from thriftscout.core.errors import ValidationError
from thriftscout.models import EXPORT_FORMATS, RankedBusiness

EMPTY_EXPORT = "Nenhum dado encontrado\n"
MIME_TYPES = {"csv": "text/csv", "excel": "application/vnd.ms-excel"}

DEFAULT_FIELDS = ("name", "address", "rating", "review_count", "phone_number", "website", "distance")

_HEADERS = {
    "name": "Nome",
    "address": "Endereço",
    "neighborhood": "Bairro",
    "city": "Cidade",
    "state": "Estado",
    "postal_code": "CEP",
    "latitude": "Latitude",
    "longitude": "Longitude",
    "rating": "Avaliação",
    "review_count": "Avaliações",
    "price_level": "Faixa de preço",
    "phone_number": "Telefone",
    "website": "Website",
    "instagram_url": "Instagram",
    "facebook_url": "Facebook",
    "categories": "Categorias",
    "is_open_now": "Status",
    "photos": "Fotos",
    "distance": "Distância (m)",
    "place_id": "Place ID",
}

_EXTRACTORS: Dict[str, Callable[[RankedBusiness], Any]] = {
    "name": lambda r: r.business.name,
    "address": lambda r: r.business.address.formatted_address,
    "neighborhood": lambda r: r.business.address.neighborhood,
    "city": lambda r: r.business.address.city,
    "state": lambda r: r.business.address.state,
    "postal_code": lambda r: r.business.address.postal_code,
    "latitude": lambda r: r.business.coordinates.lat,
    "longitude": lambda r: r.business.coordinates.lng,
    "rating": lambda r: r.business.info.rating,
    "review_count": lambda r: r.business.info.review_count,
    "price_level": lambda r: r.business.info.price_level,
    "phone_number": lambda r: r.business.contact.phone_number,
    "website": lambda r: r.business.contact.website,
    "instagram_url": lambda r: r.business.contact.instagram_url,
    "facebook_url": lambda r: r.business.contact.facebook_url,
    "categories": lambda r: ", ".join(r.business.info.categories),
    "is_open_now": lambda r: r.business.info.is_open_now,
    "photos": lambda r: "; ".join(r.business.media.photos) or "Nenhuma",
    "distance": lambda r: round(r.distance_from_center),
    "place_id": lambda r: r.business.place_id,
}

EXPORTABLE_FIELDS = tuple(_EXTRACTORS)


def validate_export(fmt: Any, fields: Optional[Sequence[Any]]) -> List[str]:
    """Check format and field names; return the field list to use."""
    errors: Dict[str, str] = {}
    if fmt not in EXPORT_FORMATS:
        errors["format"] = f"must be one of {', '.join(EXPORT_FORMATS)}"
    selected = list(DEFAULT_FIELDS)
    if fields is not None and (not isinstance(fields, list) or not all(isinstance(f, str) for f in fields)):
        errors["fields"] = "must be a list of field names"
    elif fields:
        selected = list(fields)
    unknown = [f for f in selected if f not in _EXTRACTORS]
    if unknown and "fields" not in errors:
        errors["fields"] = f"unknown fields: {', '.join(str(f) for f in unknown)}"
    if errors:
        raise ValidationError("Invalid export request", errors)
    return selected


def _cell(value: Any) -> str:
    if value is None or value == "":
        return "N/A"
    if isinstance(value, bool):
        return "Aberto" if value else "Fechado"
    return str(value)


def project(results: Sequence[RankedBusiness], fields: Sequence[str]) -> List[List[str]]:
    """Header row followed by one row per result, each prefixed with its 1-based position."""
    rows = [["#"] + [_HEADERS.get(f, f) for f in fields]]
    for position, result in enumerate(results, start=1):
        rows.append([str(position)] + [_cell(_EXTRACTORS[f](result)) for f in fields])
    return rows


def serialize(rows: List[List[str]], fmt: str) -> bytes:
    """CSV for ``csv``; tab-separated text Excel opens directly for ``excel``."""
    if len(rows) <= 1:
        return EMPTY_EXPORT.encode("utf-8")
    buffer = io.StringIO()
    delimiter = "\t" if fmt == "excel" else ","
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def file_extension(fmt: str) -> str:
    return "xls" if fmt == "excel" else "csv"


def human_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"
