"""Recode raw ACS congressional-district rows into canonical categories.

The bucket tables below must match the survey-side recodes of the MRP model
column for column. Raw count fields that are missing or malformed count as
zero; geography identity problems raise.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .recode_spec import FIPS_TO_STATE, RECODE_SPECS, RecodeSpec

# Female B01001 columns sit 24 positions after their male counterparts.
FEMALE_COLUMN_OFFSET = 24
AT_LARGE_CODES = ("00", "98")


class UnknownGeographyError(ValueError):
    pass


class UnknownStateCodeError(UnknownGeographyError):
    pass


@dataclass(frozen=True)
class District:
    state: str
    cd: str
    cd_number: str


def _b01001_col(n: int) -> str:
    return f"B01001_{n:03d}E"


def _b03002_col(n: int) -> str:
    return f"B03002_{n:03d}E"


def _b15003_col(n: int) -> str:
    return f"B15003_{n:03d}E"


# Male column numbers; female columns add FEMALE_COLUMN_OFFSET.
AGE_BUCKETS: tuple[tuple[str, tuple[int, ...]], ...] = (
    ("18-24", (7, 8, 9, 10)),  # 18-19, 20, 21, 22-24
    ("25-34", (11, 12)),  # 25-29, 30-34
    ("35-44", (13, 14)),  # 35-39, 40-44
    ("45-54", (15, 16)),  # 45-49, 50-54
    ("55-64", (17, 18, 19)),  # 55-59, 60-61, 62-64
    ("65+", (20, 21, 22, 23, 24, 25)),  # 65-66, 67-69, 70-74, 75-79, 80-84, 85+
)

RACE_BUCKETS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("White", (_b03002_col(3),)),  # White alone, not Hispanic
    ("Black", (_b03002_col(4),)),  # Black alone, not Hispanic
    ("Hispanic", (_b03002_col(12),)),  # Hispanic or Latino, any race
    ("Asian", (_b03002_col(6),)),  # Asian alone, not Hispanic
    (
        "Other",
        (
            _b03002_col(5),  # American Indian / Alaska Native
            _b03002_col(7),  # Native Hawaiian / Pacific Islander
            _b03002_col(8),  # Some other race alone
            _b03002_col(9),  # Two or more races
        ),
    ),
)

EDUCATION_BUCKETS: tuple[tuple[str, tuple[str, ...]], ...] = (
    # No schooling through 12th grade, no diploma
    ("Less Than HS", tuple(_b15003_col(n) for n in range(2, 17))),
    ("High School", (_b15003_col(17), _b15003_col(18))),  # diploma, GED
    ("Some College", (_b15003_col(19), _b15003_col(20), _b15003_col(21))),  # incl. associate's
    ("BA/BS", (_b15003_col(22),)),
    ("Post-Grad", (_b15003_col(23), _b15003_col(24), _b15003_col(25))),  # master's, professional, doctorate
)


def count_value(record: Mapping[str, Any], key: str) -> int:
    value = record.get(key)
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    text = str(value).strip()
    try:
        parsed = int(text)
    except ValueError:
        # Decimal strings such as "12.0"; large integers stay exact above.
        try:
            parsed = int(float(text))
        except (TypeError, ValueError, OverflowError):
            return 0
    return max(parsed, 0)


def _sum_columns(record: Mapping[str, Any], columns: Iterable[str]) -> int:
    return sum(count_value(record, column) for column in columns)


def age_columns(sex: str, spec: RecodeSpec = RECODE_SPECS) -> tuple[tuple[str, tuple[str, ...]], ...]:
    if sex not in spec.sex.levels:
        raise ValueError(f"Unknown sex label: {sex!r}")
    offset = FEMALE_COLUMN_OFFSET if sex == "Female" else 0
    return tuple((label, tuple(_b01001_col(n + offset) for n in cols)) for label, cols in AGE_BUCKETS)


def recode_age(record: Mapping[str, Any], sex: str, spec: RecodeSpec = RECODE_SPECS) -> dict[str, int]:
    """Sum the fine B01001 age buckets for one sex into the six age groups."""
    return {label: _sum_columns(record, cols) for label, cols in age_columns(sex, spec)}


def recode_race(record: Mapping[str, Any]) -> dict[str, int]:
    """Collapse B03002 into five groups; Hispanic origin wins over race."""
    return {label: _sum_columns(record, cols) for label, cols in RACE_BUCKETS}


def recode_education(record: Mapping[str, Any]) -> dict[str, int]:
    """Collapse B15003 attainment (population 25+) into five levels."""
    return {label: _sum_columns(record, cols) for label, cols in EDUCATION_BUCKETS}


def get_region(state: str, spec: RecodeSpec = RECODE_SPECS) -> str:
    for region, states in spec.census_region.mapping.items():
        if state in states:
            return region
    raise UnknownGeographyError(f"Unknown state code: {state}")


def fips_to_state(fips: Any) -> str:
    code = str(fips or "").strip()
    if code.isdigit() and len(code) == 1:
        code = code.zfill(2)
    state = FIPS_TO_STATE.get(code)
    if not state:
        raise UnknownStateCodeError(f"Unknown FIPS code: {fips}")
    return state


def parse_district(record: Mapping[str, Any]) -> District:
    """Resolve the state abbreviation and ``STATE-NN`` label for a row.

    At-large districts keep their distinguished code ("00", or "98" for
    delegate seats) rather than being renumbered.
    """
    state = fips_to_state(record.get("state"))

    raw_cd = str(record.get("congressional district") or "").strip()
    if not raw_cd.isdigit():
        raise UnknownGeographyError(
            f"Invalid congressional district code for {state}: {record.get('congressional district')!r}"
        )
    cd_number = raw_cd if raw_cd in AT_LARGE_CODES else raw_cd.zfill(2)

    return District(state=state, cd=f"{state}-{cd_number}", cd_number=cd_number)
