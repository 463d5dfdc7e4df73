"""
Geographic coverage resolver

ZIP code validation and location lookups use the zipcodes library;
polygon queries run against the lazily loaded ZCTA index.
"""

import logging
import math
import re
from functools import lru_cache
from typing import Optional

import zipcodes

from ...cache import MemoizedLoader
from ...exceptions import ValidationError
from .zcta import DEFAULT_MIN_INTERSECTION_RATIO, ZctaIndex, build_polygon, validate_polygon

logger = logging.getLogger(__name__)

ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
EARTH_RADIUS_MILES = 3958.8


def normalize_zipcode(zipcode: Optional[str]) -> Optional[str]:
    """Return the 5-digit ZIP or None when the format is wrong"""
    if not zipcode:
        return None
    zipcode = str(zipcode).strip()
    if not ZIP_PATTERN.match(zipcode):
        return None
    return zipcode[:5]


def validate_zipcode(zipcode: Optional[str]) -> bool:
    """True for a well-formed ZIP that exists in the US ZIP database"""
    normalized = normalize_zipcode(zipcode)
    if not normalized:
        return False
    try:
        return zipcodes.is_real(normalized)
    except (TypeError, ValueError) as e:
        logger.debug(f"ZIP lookup rejected {zipcode}: {e}")
        return False


@lru_cache(maxsize=4096)
def _lookup_location(normalized: str) -> Optional[tuple]:
    # zipcodes.matching scans the whole ZIP table on every call
    try:
        matches = zipcodes.matching(normalized)
    except (TypeError, ValueError):
        return None
    if not matches:
        return None
    try:
        return float(matches[0]["lat"]), float(matches[0]["long"])
    except (KeyError, TypeError, ValueError):
        return None


def zipcode_location(zipcode: str) -> Optional[tuple]:
    """(lat, lng) of a ZIP code centre, or None if unknown"""
    normalized = normalize_zipcode(zipcode)
    if not normalized:
        return None
    return _lookup_location(normalized)


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(a))


def zipcode_distance_miles(zip_a: str, zip_b: str) -> Optional[float]:
    if zip_a == zip_b:
        return 0.0
    loc_a = zipcode_location(zip_a)
    loc_b = zipcode_location(zip_b)
    if not loc_a or not loc_b:
        return None
    return haversine_miles(loc_a[0], loc_a[1], loc_b[0], loc_b[1])


class CoverageResolver:
    """Pure geometric queries over the shared ZCTA dataset"""

    def __init__(self, loader: MemoizedLoader):
        self._loader = loader

    async def index(self) -> ZctaIndex:
        # DataUnavailableError propagates; no partial answers
        return await self._loader.get()

    async def find_intersecting_zipcodes(
        self,
        points,
        include_partial: bool = True,
        min_intersection_ratio: float = DEFAULT_MIN_INTERSECTION_RATIO,
    ) -> list:
        """
        ZIP codes whose ZCTA geometry intersects the polygon.

        Args:
            points: [(lat, lng), ...] with at least 3 vertices, closed automatically
            include_partial: Keep every intersecting ZCTA, slivers included
            min_intersection_ratio: Minimum covered share of a partial ZCTA
                when include_partial is False

        Returns:
            List of ZipMatch sorted by intersection area (largest first)
        """
        validation = validate_polygon(points)
        if not validation.is_valid:
            raise ValidationError("; ".join(validation.errors))
        if not 0 <= min_intersection_ratio <= 1:
            raise ValidationError("min_intersection_ratio must be between 0 and 1")

        index = await self.index()
        polygon = build_polygon(points)
        matches = index.find_intersecting(
            polygon,
            include_partial=include_partial,
            min_intersection_ratio=min_intersection_ratio,
        )
        logger.info(f"📍 Polygon resolved to {len(matches)} ZIP codes")
        return matches

    async def zipcode_for_point(self, lat: float, lng: float) -> Optional[str]:
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationError("Coordinates out of range")
        index = await self.index()
        return index.zipcode_at(lat, lng)
