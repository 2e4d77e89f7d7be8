"""Cross-tabulate recoded ACS marginals into poststratification cells.

The source only publishes one marginal distribution per dimension, so each
cell is estimated by proportional-independence allocation:

    population = round(total_age * age_prop * race_prop * edu_prop)

where ``total_age`` is the adult population of one sex in one district. Cells
are rounded independently, so the cells of a district need not sum back to its
marginal totals.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol

from loguru import logger

from .recode_service import (
    UnknownGeographyError,
    get_region,
    parse_district,
    recode_age,
    recode_education,
    recode_race,
)
from .recode_spec import RECODE_SPECS, RecodeSpec

DEFAULT_BATCH_SIZE = 5000


class EmptyInputError(RuntimeError):
    pass


class DuplicateGeographyError(ValueError):
    """A district appears more than once in one build's input."""


@dataclass(frozen=True)
class DemographicCell:
    year: int
    state: str
    cd: str
    age_group: str
    sex: str
    race_eth: str
    education: str
    census_region: str
    population: int

    @property
    def key(self) -> tuple[int, str, str, str, str, str, str, str]:
        return (
            self.year,
            self.state,
            self.cd,
            self.age_group,
            self.sex,
            self.race_eth,
            self.education,
            self.census_region,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "state": self.state,
            "cd": self.cd,
            "ageGroup": self.age_group,
            "sex": self.sex,
            "raceEth": self.race_eth,
            "education": self.education,
            "censusRegion": self.census_region,
            "population": self.population,
        }


@dataclass(frozen=True)
class SkippedDistrict:
    name: str | None
    state: str | None
    cd: str | None
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state, "cd": self.cd, "reason": self.reason}


@dataclass
class BuildResult:
    year: int
    districts_processed: int = 0
    districts_skipped: int = 0
    cells_generated: int = 0
    skipped: list[SkippedDistrict] = field(default_factory=list)
    dimensions: dict[str, int] = field(default_factory=RECODE_SPECS.dimension_counts)

    def as_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "districtsProcessed": self.districts_processed,
            "districtsSkipped": self.districts_skipped,
            "cellsGenerated": self.cells_generated,
            "skipped": [item.as_dict() for item in self.skipped],
            "dimensions": dict(self.dimensions),
        }


class CellSink(Protocol):
    def insert_cells(self, cells: list[DemographicCell], batch_size: int = ...) -> int: ...


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero (0.5 -> 1).

    Not the builtin ``round``, which rounds halves to even.
    """
    if value < 0:
        return -int(math.floor(-value + 0.5))
    return int(math.floor(value + 0.5))


def cross_tabulate_district(
    year: int,
    record: Mapping[str, Any],
    spec: RecodeSpec = RECODE_SPECS,
) -> list[DemographicCell]:
    """Build every non-empty cell for one district row.

    Raises ``UnknownGeographyError`` when the row's state or district cannot
    be resolved.
    """
    district = parse_district(record)
    census_region = get_region(district.state, spec)

    race_counts = recode_race(record)
    education_counts = recode_education(record)
    total_race = sum(race_counts.values())
    total_edu = sum(education_counts.values())

    cells: list[DemographicCell] = []
    for sex in spec.sex.levels:
        age_counts = recode_age(record, sex, spec)
        total_age = sum(age_counts.values())

        # A zero marginal means missing source data, not an empty population.
        if total_age == 0 or total_race == 0 or total_edu == 0:
            continue

        for age_group in spec.age_group.levels:
            age_prop = age_counts[age_group] / total_age
            for race_eth in spec.race_eth.levels:
                race_prop = race_counts[race_eth] / total_race
                for education in spec.education.levels:
                    edu_prop = education_counts[education] / total_edu

                    population = round_half_up(total_age * age_prop * race_prop * edu_prop)
                    if population <= 0:
                        continue

                    cells.append(
                        DemographicCell(
                            year=year,
                            state=district.state,
                            cd=district.cd,
                            age_group=age_group,
                            sex=sex,
                            race_eth=race_eth,
                            education=education,
                            census_region=census_region,
                            population=population,
                        )
                    )
    return cells


def build_poststrat_cells(
    year: int,
    records: Iterable[Mapping[str, Any]],
    spec: RecodeSpec = RECODE_SPECS,
) -> tuple[list[DemographicCell], BuildResult]:
    rows = list(records)
    if not rows:
        raise EmptyInputError(f"No district records supplied for {year}")

    logger.info(f"Building poststrat table for {year} from {len(rows)} districts")

    result = BuildResult(year=year, dimensions=spec.dimension_counts())
    cells: list[DemographicCell] = []

    seen: set[str] = set()
    for row in rows:
        try:
            cd = parse_district(row).cd
            if cd in seen:
                raise DuplicateGeographyError(f"Duplicate geography {cd}")
            district_cells = cross_tabulate_district(year, row, spec)
        except (UnknownGeographyError, DuplicateGeographyError) as exc:
            name = row.get("NAME")
            logger.warning(f"Skipping district {name}: {exc}")
            result.skipped.append(
                SkippedDistrict(
                    name=name,
                    state=row.get("state"),
                    cd=row.get("congressional district"),
                    reason=str(exc),
                )
            )
            result.districts_skipped += 1
            continue

        seen.add(cd)
        cells.extend(district_cells)
        result.districts_processed += 1

    result.cells_generated = len(cells)
    logger.info(
        f"Generated {len(cells)} cells from {result.districts_processed} districts "
        f"({result.districts_skipped} skipped)"
    )
    return cells, result


def build_poststrat_table(
    year: int,
    records: Iterable[Mapping[str, Any]],
    store: CellSink,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    spec: RecodeSpec = RECODE_SPECS,
) -> dict[str, Any]:
    cells, result = build_poststrat_cells(year, records, spec)
    stored = store.insert_cells(cells, batch_size=batch_size)
    return {**result.as_dict(), "cellsStored": stored}


def summarize_cells(cells: Iterable[DemographicCell]) -> dict[str, int]:
    total_cells = 0
    total_population = 0
    districts: set[str] = set()
    for cell in cells:
        total_cells += 1
        total_population += cell.population
        districts.add(cell.cd)

    return {
        "totalCells": total_cells,
        "districtsCount": len(districts),
        "totalPopulation": total_population,
        "averageCellsPerDistrict": round_half_up(total_cells / len(districts)) if districts else 0,
    }
