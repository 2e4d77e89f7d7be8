from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ErrorResponse(BaseModel):
    detail: str


class DimensionCounts(WireModel):
    age_groups: int
    sexes: int
    race_eth: int
    education: int
    census_regions: int


class PoststratCell(WireModel):
    year: int
    state: str = Field(..., min_length=2, max_length=2)
    cd: str
    age_group: str
    sex: str
    race_eth: str
    education: str
    census_region: str
    population: int = Field(..., gt=0)


class SkippedDistrictOut(WireModel):
    name: str | None = None
    state: str | None = None
    cd: str | None = None
    reason: str


class BuildResponse(WireModel):
    success: bool = True
    message: str
    year: int
    districts_processed: int = Field(..., ge=0)
    districts_skipped: int = Field(..., ge=0)
    cells_generated: int = Field(..., ge=0)
    cells_stored: int = Field(..., ge=0)
    cells_deleted: int = Field(0, ge=0)
    skipped: list[SkippedDistrictOut] = Field(default_factory=list)
    dimensions: DimensionCounts


class TableStatsResponse(WireModel):
    success: bool = True
    year: int
    total_cells: int
    districts_count: int
    total_population: int
    average_cells_per_district: int


class DistrictDemographics(WireModel):
    age_groups: list[str]
    sexes: list[str]
    race_eth: list[str]
    education: list[str]


class DistrictCellsResponse(WireModel):
    success: bool = True
    year: int
    cd: str
    cell_count: int
    total_population: int
    demographics: DistrictDemographics
    cells: list[PoststratCell]


class AvailableYearsResponse(WireModel):
    success: bool = True
    years: list[int]
    message: str
    recommended: int


class DeleteTableResponse(WireModel):
    success: bool = True
    year: int
    deleted_count: int
    message: str


class HealthResponse(WireModel):
    status: str
    service: str
    version: str
    timestamp: datetime


class InfoResponse(WireModel):
    name: str
    description: str
    version: str
    spec_version: str
    endpoints: dict[str, str]
    demographics: dict[str, int]
