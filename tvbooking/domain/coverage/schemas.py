"""Coverage domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .zcta import DEFAULT_MIN_INTERSECTION_RATIO

# [(lat, lng), ...]
Polygon = list[tuple[float, float]]


class CoverageQuery(BaseModel):
    """Polygon or explicit ZIP list, optionally relative to one worker"""

    polygon: Optional[Polygon] = None
    zipcodes_only: Optional[list[str]] = None
    worker_id: Optional[str] = None
    include_partial: bool = True
    min_intersection_ratio: float = Field(default=DEFAULT_MIN_INTERSECTION_RATIO, ge=0, le=1)


class PolygonRequest(BaseModel):
    polygon: Polygon


class ServiceAreaUpsert(BaseModel):
    worker_id: str
    area_name: str
    polygon: Optional[Polygon] = None
    zipcodes: Optional[list[str]] = None
    include_partial: bool = True
    min_intersection_ratio: float = Field(default=DEFAULT_MIN_INTERSECTION_RATIO, ge=0, le=1)

    @field_validator("area_name")
    @classmethod
    def strip_name(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("Area name is required")
        return v[:255]


class ServiceAreaResponse(BaseModel):
    id: str
    worker_id: str
    area_name: str
    polygon_coords: Optional[list] = None
    zipcodes: list[str]
    is_active: bool
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OfferResponseRequest(BaseModel):
    worker_id: str
