"""CLI job to run a cached brechó search and print the JSON response."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from thriftscout.core.discovery import build_service
from thriftscout.core.errors import ValidationError
from thriftscout.models import DEFAULT_PAGE_LIMIT, SearchCriteria

logger = logging.getLogger(__name__)


def build_payload(args: argparse.Namespace) -> dict:
    filters = {}
    if args.min_rating is not None:
        filters["min_rating"] = args.min_rating
    if args.has_website:
        filters["has_website"] = True
    if args.open_now:
        filters["open_now"] = True
    return {
        "location": {"lat": args.lat, "lng": args.lng, "radius": args.radius},
        "filters": filters,
        "pagination": {"page": args.page, "limit": args.limit},
    }


def run_search_job(args: argparse.Namespace) -> dict:
    criteria = SearchCriteria.from_payload(build_payload(args))
    service = build_service()
    response = service.search(criteria, args.owner)
    logger.info(
        "Search returned %d of %d businesses (cache_hit=%s)",
        len(response.businesses),
        response.pagination.total,
        response.metadata.cache_hit,
    )
    return response.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Search second-hand clothing stores around a point")
    parser.add_argument("--lat", dest="lat", type=float, required=True, help="Latitude of the search centre")
    parser.add_argument("--lng", dest="lng", type=float, required=True, help="Longitude of the search centre")
    parser.add_argument("--radius", dest="radius", type=float, required=True, help="Radius in meters (100-50000)")
    parser.add_argument("--owner", dest="owner", required=True, help="Owner id recorded with the search")
    parser.add_argument("--min-rating", dest="min_rating", type=float, help="Minimum rating")
    parser.add_argument("--page", dest="page", type=int, default=1, help="Result page")
    parser.add_argument("--limit", dest="limit", type=int, default=DEFAULT_PAGE_LIMIT, help="Results per page")
    parser.add_argument("--has-website", dest="has_website", action="store_true", help="Only stores with a website")
    parser.add_argument("--open-now", dest="open_now", action="store_true", help="Only stores open now")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        result = run_search_job(args)
    except ValidationError as exc:
        logger.error("Invalid search: %s %s", exc.message, exc.details)
        return 2

    json.dump(result, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
