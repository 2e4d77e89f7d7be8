from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx
from loguru import logger

from .recode_service import AGE_BUCKETS, EDUCATION_BUCKETS, FEMALE_COLUMN_OFFSET, RACE_BUCKETS

CENSUS_API_BASE_URL = "https://api.census.gov/data"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
GEOGRAPHY_FIELDS = ("NAME", "state", "congressional district")

# The API caps a request at 50 "get" fields; NAME takes one of them.
MAX_VARS_PER_REQUEST = 45


def _age_variables(offset: int) -> list[str]:
    return [f"B01001_{n + offset:03d}E" for _, cols in AGE_BUCKETS for n in cols]


CENSUS_VARIABLES: dict[str, list[str]] = {
    "total": ["B01001_001E"],
    "age_male": _age_variables(0),
    "age_female": _age_variables(FEMALE_COLUMN_OFFSET),
    "race_total": ["B03002_001E"],
    "race": [col for _, cols in RACE_BUCKETS for col in cols],
    "edu_total": ["B15003_001E"],
    "education": [col for _, cols in EDUCATION_BUCKETS for col in cols],
}


@dataclass(frozen=True)
class ApiConfig:
    timeout: float = 20.0
    retries: int = 3
    batch_delay: float = 0.2


class UpstreamAPIError(RuntimeError):
    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class MissingAPIKeyError(RuntimeError):
    """Raised when CENSUS_API_KEY is not configured."""


def all_variables() -> list[str]:
    return [var for group in CENSUS_VARIABLES.values() for var in group]


def batch_variables(variables: list[str], size: int = MAX_VARS_PER_REQUEST) -> list[list[str]]:
    return [variables[i:i + size] for i in range(0, len(variables), size)]


def _backoff_seconds(attempt: int) -> float:
    return min(8.0, 0.5 * (2**attempt))


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


def request_json(
    client: httpx.Client,
    url: str,
    *,
    params: dict[str, Any] | None,
    stage: str,
    config: ApiConfig,
) -> Any:
    last_error: Exception | None = None
    headers = {"User-Agent": "poststrat-builder/1.0"}
    for attempt in range(config.retries + 1):
        try:
            response = client.get(url, params=params, timeout=config.timeout, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_error = exc
            if attempt < config.retries:
                time.sleep(_backoff_seconds(attempt))
                continue
            raise UpstreamAPIError(stage, f"Network error after retries: {exc!s}") from exc

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            last_error = UpstreamAPIError(
                stage, f"HTTP {status}: {_short_error_text(response.text)}"
            )
            if attempt < config.retries:
                time.sleep(_backoff_seconds(attempt))
                continue
            raise last_error

        if 400 <= status < 500:
            raise UpstreamAPIError(stage, f"HTTP {status}: {_short_error_text(response.text)}")

        # The Census API answers 204 with no body when a vintage has no data.
        if status == 204 or not response.content.strip():
            return []

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamAPIError(
                stage, f"Invalid JSON in upstream response (HTTP {status})"
            ) from exc

    if last_error is not None:
        raise UpstreamAPIError(stage, f"Failed request after retries: {last_error!s}")
    raise UpstreamAPIError(stage, "Failed request after retries.")


def rows_to_records(payload: Any, stage: str) -> list[dict[str, Any]]:
    if not payload:
        return []
    if not isinstance(payload, list) or not isinstance(payload[0], list):
        raise UpstreamAPIError(stage, "Expected a header row followed by data rows")

    headers = payload[0]
    return [dict(zip(headers, row)) for row in payload[1:]]


def _district_key(record: dict[str, Any]) -> tuple[Any, Any]:
    return record.get("state"), record.get("congressional district")


def merge_district_records(
    merged: dict[tuple[Any, Any], dict[str, Any]],
    incoming: list[dict[str, Any]],
) -> None:
    for record in incoming:
        key = _district_key(record)
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(record)
            continue
        for field, value in record.items():
            if field not in GEOGRAPHY_FIELDS:
                existing[field] = value


def fetch_acs1_year(
    client: httpx.Client,
    year: int,
    *,
    api_key: str,
    config: ApiConfig | None = None,
) -> list[dict[str, Any]]:
    """Fetch every B01001/B03002/B15003 variable the recodes need for all
    congressional districts, one row per district."""
    if not api_key:
        raise MissingAPIKeyError("CENSUS_API_KEY environment variable not set")
    config = config or ApiConfig()

    variables = all_variables()
    batches = batch_variables(variables)
    url = f"{CENSUS_API_BASE_URL}/{year}/acs/acs1"
    logger.info(
        f"Fetching ACS {year} 1-year data: {len(variables)} variables in {len(batches)} batches"
    )

    merged: dict[tuple[Any, Any], dict[str, Any]] = {}
    for index, batch in enumerate(batches, start=1):
        stage = f"acs1:{year}:batch{index}"
        payload = request_json(
            client,
            url,
            params={
                "get": ",".join(["NAME", *batch]),
                "for": "congressional district:*",
                "in": "state:*",
                "key": api_key,
            },
            stage=stage,
            config=config,
        )
        records = rows_to_records(payload, stage)
        if not records:
            logger.warning(f"ACS {year} batch {index}/{len(batches)} returned no rows")
            return []

        merge_district_records(merged, records)
        logger.info(f"Batch {index}/{len(batches)} complete ({len(batch)} variables)")

        if index < len(batches) and config.batch_delay > 0:
            time.sleep(config.batch_delay)

    logger.info(f"Fetched {len(merged)} congressional districts")
    return list(merged.values())


def get_available_years(today: date | None = None) -> list[int]:
    # 1-year estimates are released about a year after collection.
    current = (today or date.today()).year
    return [current - 2, current - 3, current - 4]
