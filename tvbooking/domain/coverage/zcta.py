"""
ZCTA reference geometry and polygon → ZIP resolution

The dataset is an immutable GeoJSON FeatureCollection of ZIP Code
Tabulation Areas. It is indexed once with an STRtree; every query
prefilters on bounding boxes and then runs exact shapely predicates.
Coordinates arrive as (lat, lng) pairs and are stored as shapely (x=lng, y=lat).
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from shapely.errors import ShapelyError
from shapely.geometry import LinearRing, Point, Polygon, shape
from shapely.strtree import STRtree

from ...exceptions import DataUnavailableError, ValidationError

logger = logging.getLogger(__name__)

ZIP_PROPERTY_KEYS = ("ZCTA5CE20", "ZCTA5CE", "zipcode")

DEFAULT_MIN_INTERSECTION_RATIO = 0.1
MAX_AREA_WARNING_KM2 = 10000
MIN_AREA_WARNING_KM2 = 1

KM_PER_DEG_LAT = 110.574
KM_PER_DEG_LNG_EQUATOR = 111.320


@dataclass(frozen=True)
class ZctaFeature:
    zipcode: str
    geometry: object  # shapely Polygon / MultiPolygon
    area: float  # square degrees, only used for ratios


@dataclass
class ZipMatch:
    zipcode: str
    intersection_area: float
    intersection_ratio: float
    centroid_inside: bool

    def to_dict(self) -> dict:
        return {
            "zipcode": self.zipcode,
            "intersection_ratio": round(self.intersection_ratio, 4),
            "full_coverage": self.centroid_inside or self.intersection_ratio >= 0.999,
        }


@dataclass
class PolygonValidation:
    is_valid: bool
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    area_km2: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "area_km2": round(self.area_km2, 3) if self.area_km2 is not None else None,
        }


def _zip_from_properties(properties: dict) -> Optional[str]:
    for key in ZIP_PROPERTY_KEYS:
        value = properties.get(key)
        if value:
            return str(value).zfill(5)
    return None


class ZctaIndex:
    """Spatial index over ZCTA features"""

    def __init__(self, features: list):
        if not features:
            raise DataUnavailableError("ZCTA dataset contains no usable features")
        self.features = features
        self._tree = STRtree([f.geometry for f in features])

    @classmethod
    def from_geojson(cls, data: dict) -> "ZctaIndex":
        features = []
        skipped = 0
        for raw in data.get("features") or []:
            zipcode = _zip_from_properties(raw.get("properties") or {})
            geometry = raw.get("geometry")
            if not zipcode or not geometry:
                skipped += 1
                continue
            geom = shape(geometry)
            if geom.is_empty:
                skipped += 1
                continue
            features.append(ZctaFeature(zipcode=zipcode, geometry=geom, area=geom.area))
        if skipped:
            logger.warning(f"⚠️ Skipped {skipped} ZCTA features without ZIP code or geometry")
        return cls(features)

    def __len__(self) -> int:
        return len(self.features)

    def candidates(self, geom) -> list:
        """Features whose bounding box intersects geom"""
        return [self.features[i] for i in self._tree.query(geom)]

    def find_intersecting(
        self,
        polygon: Polygon,
        include_partial: bool = True,
        min_intersection_ratio: float = DEFAULT_MIN_INTERSECTION_RATIO,
    ) -> list:
        matches = []
        for feature in self.candidates(polygon):
            if not polygon.intersects(feature.geometry):
                continue
            intersection_area = polygon.intersection(feature.geometry).area
            ratio = intersection_area / feature.area if feature.area else 0.0
            centroid_inside = polygon.contains(feature.geometry.centroid)

            # strict mode drops slivers; the default keeps every overlap
            if not include_partial and not centroid_inside and ratio < min_intersection_ratio:
                continue
            matches.append(
                ZipMatch(
                    zipcode=feature.zipcode,
                    intersection_area=intersection_area,
                    intersection_ratio=ratio,
                    centroid_inside=centroid_inside,
                )
            )

        # Several features may share one ZIP (multi-part ZCTAs); keep the largest overlap
        best: dict = {}
        for match in matches:
            current = best.get(match.zipcode)
            if current is None or match.intersection_area > current.intersection_area:
                best[match.zipcode] = match
        return sorted(best.values(), key=lambda m: (-round(m.intersection_area, 12), m.zipcode))

    def zipcode_at(self, lat: float, lng: float) -> Optional[str]:
        point = Point(lng, lat)
        for feature in self.candidates(point):
            if feature.geometry.covers(point):
                return feature.zipcode
        return None


def build_polygon(points) -> Polygon:
    """(lat, lng) vertices → closed shapely polygon"""
    coords = [(float(p[1]), float(p[0])) for p in points]
    if len(coords) > 1 and coords[0] == coords[-1]:
        coords = coords[:-1]
    if len(coords) < 3:
        raise ValidationError("Polygon must have at least 3 points")
    return Polygon(coords)


def approximate_area_km2(polygon: Polygon) -> float:
    mean_lat = polygon.centroid.y
    km_per_deg_lng = KM_PER_DEG_LNG_EQUATOR * math.cos(math.radians(mean_lat))
    return abs(polygon.area) * KM_PER_DEG_LAT * km_per_deg_lng


def validate_polygon(points) -> PolygonValidation:
    """
    Validate a drawn service-area polygon.

    Rules:
        - at least 3 distinct vertices (the ring is closed automatically)
        - edges must not cross each other
        - very large (> 10,000 km²) or tiny (< 1 km²) areas only produce warnings
    """
    result = PolygonValidation(is_valid=True)

    try:
        coords = [(float(p[1]), float(p[0])) for p in points or []]
    except (TypeError, ValueError, IndexError):
        result.is_valid = False
        result.errors.append("Polygon points must be [lat, lng] pairs")
        return result

    if len(coords) > 1 and coords[0] == coords[-1]:
        coords = coords[:-1]
    if len(coords) < 3:
        result.is_valid = False
        result.errors.append("Polygon must have at least 3 points")
        return result

    for lng, lat in coords:
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            result.is_valid = False
            result.errors.append(f"Coordinate out of range: ({lat}, {lng})")
            return result

    ring = LinearRing(coords)
    if not ring.is_simple:
        result.is_valid = False
        result.errors.append("Polygon edges cannot cross each other")
        return result

    polygon = Polygon(coords)
    if polygon.area == 0:
        result.is_valid = False
        result.errors.append("Polygon has no area")
        return result

    result.area_km2 = approximate_area_km2(polygon)
    if result.area_km2 > MAX_AREA_WARNING_KM2:
        result.warnings.append(
            f"Very large area ({result.area_km2:,.0f} km²). Consider splitting into smaller areas."
        )
    elif result.area_km2 < MIN_AREA_WARNING_KM2:
        result.warnings.append(
            f"Very small area ({result.area_km2:.2f} km²). It may not cover any ZIP code."
        )
    return result


async def load_zcta_dataset(path: str) -> ZctaIndex:
    """Read and index the GeoJSON file off the event loop"""

    def _read() -> ZctaIndex:
        with open(Path(path), encoding="utf-8") as fh:
            data = json.load(fh)
        return ZctaIndex.from_geojson(data)

    try:
        index = await asyncio.to_thread(_read)
    except DataUnavailableError:
        raise
    except (OSError, ValueError, TypeError, KeyError, ShapelyError) as e:
        logger.error(f"❌ Failed to load ZCTA dataset from {path}: {e}")
        raise DataUnavailableError(f"ZCTA dataset unavailable: {e}") from e
    logger.info(f"📊 ZCTA dataset indexed: {len(index)} features from {path}")
    return index
