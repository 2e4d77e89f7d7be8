from __future__ import annotations

import re
from datetime import date, datetime, timezone

import httpx
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .census_service import (
    ApiConfig,
    MissingAPIKeyError,
    UpstreamAPIError,
    fetch_acs1_year,
    get_available_years,
)
from .config import Settings, get_settings
from .recode_spec import RECODE_SPECS
from .schemas import (
    AvailableYearsResponse,
    BuildResponse,
    DeleteTableResponse,
    DistrictCellsResponse,
    HealthResponse,
    InfoResponse,
    TableStatsResponse,
)
from .table_builder import build_poststrat_table
from .table_store import connect_store

SERVICE_NAME = "Poststratification Table Builder"
VERSION = "1.0.0"
MIN_YEAR = 2010
DISTRICT_PATTERN = re.compile(r"^[A-Z]{2}-\d{2}$")
DEFAULT_CELL_PREVIEW = 10

app = FastAPI(title="Census Poststratification API", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_admin(settings: Settings, secret: str | None) -> None:
    if not settings.admin_secret or secret != settings.admin_secret:
        raise HTTPException(
            status_code=401,
            detail="Admin secret required. Set X-Admin-Secret header.",
        )


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service=SERVICE_NAME,
        version=VERSION,
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/api/info", response_model=InfoResponse)
def info() -> InfoResponse:
    return InfoResponse(
        name="Census Poststratification API",
        description="Build demographic lookup tables from Census ACS data for MRP modeling",
        version=VERSION,
        spec_version=RECODE_SPECS.version,
        endpoints={
            "build": "POST /api/build/{year} (requires X-Admin-Secret)",
            "stats": "GET /api/stats/{year}",
            "district": "GET /api/district/{year}/{cd}",
            "availableYears": "GET /api/available-years",
            "delete": "DELETE /api/table/{year} (requires X-Admin-Secret)",
        },
        demographics={
            **RECODE_SPECS.dimension_counts(),
            "totalCellsPerDistrict": RECODE_SPECS.cells_per_district(),
        },
    )


@app.get("/api/available-years", response_model=AvailableYearsResponse)
def available_years() -> AvailableYearsResponse:
    years = get_available_years()
    return AvailableYearsResponse(
        years=years,
        message="ACS 1-year data is typically available 12-18 months after collection year",
        recommended=years[1],
    )


@app.post("/api/build/{year}", response_model=BuildResponse)
def build_table(
    year: int,
    rebuild: bool = Query(False),
    x_admin_secret: str | None = Header(None),
) -> BuildResponse:
    """Fetch ACS 1-year district data for ``year`` and store its cells.

    Existing cells are kept unless ``rebuild`` is set; cells whose keys
    already exist are skipped on insert.
    """
    settings = get_settings()
    _require_admin(settings, x_admin_secret)

    if year < MIN_YEAR or year > date.today().year:
        raise HTTPException(
            status_code=400,
            detail=f"Year must be between {MIN_YEAR} and current year",
        )

    logger.info(f"Starting poststrat table build for {year}")
    config = ApiConfig(timeout=settings.census_timeout, retries=settings.census_retries)
    try:
        with httpx.Client(follow_redirects=True) as client:
            census_data = fetch_acs1_year(client, year, api_key=settings.census_api_key, config=config)
    except MissingAPIKeyError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except UpstreamAPIError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    if not census_data:
        raise HTTPException(
            status_code=404,
            detail=(
                f"No ACS 1-year data available for {year}. "
                "ACS 1-year estimates may not be published yet; try an earlier year."
            ),
        )

    with connect_store(settings.db_path) as store, store.transaction():
        deleted = store.delete_year(year) if rebuild else 0
        result = build_poststrat_table(year, census_data, store, batch_size=settings.batch_size)

    logger.info(f"Build complete for {year}: {result['cellsGenerated']} cells")
    return BuildResponse(
        message=f"Poststrat table built for {year}",
        cells_deleted=deleted,
        **result,
    )


@app.get("/api/stats/{year}", response_model=TableStatsResponse)
def table_stats(year: int) -> TableStatsResponse:
    with connect_store(get_settings().db_path) as store:
        stats = store.get_table_stats(year)

    if stats["totalCells"] == 0:
        raise HTTPException(
            status_code=404,
            detail=f"No poststrat table exists for {year}. Use POST /api/build/{year} to create one.",
        )
    return TableStatsResponse(**stats)


@app.get("/api/district/{year}/{cd}", response_model=DistrictCellsResponse)
def district_cells(
    year: int,
    cd: str,
    full: bool = Query(False),
) -> DistrictCellsResponse:
    cd = cd.upper()
    if not DISTRICT_PATTERN.match(cd):
        raise HTTPException(
            status_code=400,
            detail="Invalid congressional district format. Format should be STATE-NN (e.g., TX-32, CA-01)",
        )

    with connect_store(get_settings().db_path) as store:
        cells = store.get_cells_by_district(year, cd)

    if not cells:
        raise HTTPException(
            status_code=404,
            detail=f"No poststrat cells for {cd} in {year}. Build the table first.",
        )

    return DistrictCellsResponse(
        year=year,
        cd=cd,
        cell_count=len(cells),
        total_population=sum(cell["population"] for cell in cells),
        demographics={
            "ageGroups": sorted(_unique([c["ageGroup"] for c in cells])),
            "sexes": _unique([c["sex"] for c in cells]),
            "raceEth": _unique([c["raceEth"] for c in cells]),
            "education": _unique([c["education"] for c in cells]),
        },
        cells=cells if full else cells[:DEFAULT_CELL_PREVIEW],
    )


@app.delete("/api/table/{year}", response_model=DeleteTableResponse)
def delete_table(
    year: int,
    x_admin_secret: str | None = Header(None),
) -> DeleteTableResponse:
    settings = get_settings()
    _require_admin(settings, x_admin_secret)

    with connect_store(settings.db_path) as store:
        deleted = store.delete_year(year)

    logger.info(f"Deleted {deleted} cells for {year}")
    return DeleteTableResponse(
        year=year,
        deleted_count=deleted,
        message=f"Deleted {deleted} cells for {year}",
    )
