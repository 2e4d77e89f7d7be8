"""Tests for proportional-independence cross-tabulation."""
from __future__ import annotations

import json

import pytest

from backend.app.table_builder import (
    DemographicCell,
    EmptyInputError,
    build_poststrat_cells,
    build_poststrat_table,
    cross_tabulate_district,
    round_half_up,
    summarize_cells,
)


def _district_record(state: str = "48", cd: str = "32", scale: int = 1) -> dict:
    record = {
        "NAME": f"Congressional District {cd}, state {state}",
        "state": state,
        "congressional district": cd,
    }
    for n in range(7, 26):
        record[f"B01001_{n:03d}E"] = str(100 * scale)
    for n in range(31, 50):
        record[f"B01001_{n:03d}E"] = str(110 * scale)
    record.update(
        {
            "B03002_003E": str(5000 * scale),
            "B03002_004E": str(2000 * scale),
            "B03002_005E": str(50 * scale),
            "B03002_006E": str(800 * scale),
            "B03002_007E": str(20 * scale),
            "B03002_008E": str(30 * scale),
            "B03002_009E": str(400 * scale),
            "B03002_012E": str(3000 * scale),
        }
    )
    for n in range(2, 17):
        record[f"B15003_{n:03d}E"] = str(40 * scale)
    record.update(
        {
            "B15003_017E": str(1500 * scale),
            "B15003_018E": str(200 * scale),
            "B15003_019E": str(500 * scale),
            "B15003_020E": str(400 * scale),
            "B15003_021E": str(600 * scale),
            "B15003_022E": str(1800 * scale),
            "B15003_023E": str(700 * scale),
            "B15003_024E": str(150 * scale),
            "B15003_025E": str(100 * scale),
        }
    )
    return record


def test_single_bucket_district_yields_one_cell() -> None:
    record = {
        "NAME": "Congressional District 32, Texas",
        "state": "48",
        "congressional district": "32",
        "B01001_007E": "1000",
        "B03002_003E": "2000",
        "B15003_022E": "1500",
    }

    cells = cross_tabulate_district(2023, record)

    assert cells == [
        DemographicCell(
            year=2023,
            state="TX",
            cd="TX-32",
            age_group="18-24",
            sex="Male",
            race_eth="White",
            education="BA/BS",
            census_region="South",
            population=1000,
        )
    ]


def test_zero_marginal_produces_no_cells_for_that_sex() -> None:
    record = _district_record()
    for n in range(31, 50):
        record[f"B01001_{n:03d}E"] = "0"

    cells = cross_tabulate_district(2023, record)

    assert cells
    assert {cell.sex for cell in cells} == {"Male"}


def test_zero_race_or_education_total_produces_no_cells() -> None:
    no_race = {k: v for k, v in _district_record().items() if not k.startswith("B03002")}
    no_edu = {k: v for k, v in _district_record().items() if not k.startswith("B15003")}

    assert cross_tabulate_district(2023, no_race) == []
    assert cross_tabulate_district(2023, no_edu) == []


def test_uniform_marginals_give_equal_cells() -> None:
    record = {"NAME": "Uniform", "state": "36", "congressional district": "10"}
    for col in (7, 11, 13, 15, 17, 20):
        record[f"B01001_{col:03d}E"] = 600
    for col in ("003", "004", "012", "006", "005"):
        record[f"B03002_{col}E"] = 100
    for col in ("002", "017", "019", "022", "023"):
        record[f"B15003_{col}E"] = 100

    cells = cross_tabulate_district(2022, record)

    assert len(cells) == 6 * 5 * 5
    assert {cell.population for cell in cells} == {24}
    assert {cell.census_region for cell in cells} == {"Northeast"}


def test_half_cells_round_up_and_totals_need_not_reconcile() -> None:
    record = {
        "NAME": "Tiny",
        "state": "08",
        "congressional district": "01",
        "B01001_007E": "1",
        "B03002_003E": "1",
        "B03002_004E": "1",
        "B15003_022E": "1",
    }

    cells = cross_tabulate_district(2021, record)

    assert [(c.race_eth, c.population) for c in cells] == [("White", 1), ("Black", 1)]
    # Independent rounding: two cells of 0.5 each sum to 2 against a marginal of 1.
    assert sum(c.population for c in cells) == 2


def test_round_half_up() -> None:
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(0.49) == 0
    assert round_half_up(1.51) == 2
    assert round_half_up(-0.5) == -1


def test_build_cells_are_positive_and_keys_unique() -> None:
    records = [
        _district_record("48", "32"),
        _district_record("48", "7", scale=2),
        _district_record("06", "12", scale=3),
        _district_record("02", "00"),
    ]

    cells, result = build_poststrat_cells(2023, records)

    assert result.districts_processed == 4
    assert result.districts_skipped == 0
    assert result.cells_generated == len(cells)
    assert all(cell.population > 0 for cell in cells)
    keys = [cell.key for cell in cells]
    assert len(keys) == len(set(keys))
    assert {cell.cd for cell in cells} == {"TX-32", "TX-07", "CA-12", "AK-00"}
    assert len(cells) <= 4 * 300


def test_build_is_deterministic() -> None:
    records = [_district_record("48", "32"), _district_record("39", "3", scale=5)]

    first, _ = build_poststrat_cells(2023, records)
    second, _ = build_poststrat_cells(2023, records)

    assert first == second
    assert json.dumps([c.as_dict() for c in first]) == json.dumps([c.as_dict() for c in second])


def test_bad_geographies_are_skipped_with_cause() -> None:
    bad_fips = _district_record("99", "01")
    territory = _district_record("72", "98")
    records = [bad_fips, _district_record("48", "32"), territory]

    cells, result = build_poststrat_cells(2023, records)

    assert result.districts_processed == 1
    assert result.districts_skipped == 2
    assert {cell.cd for cell in cells} == {"TX-32"}
    reasons = [item.reason for item in result.skipped]
    assert "Unknown FIPS code: 99" in reasons[0]
    assert "PR" in reasons[1]
    assert result.as_dict()["skipped"][0]["state"] == "99"


def test_build_result_shape() -> None:
    _, result = build_poststrat_cells(2023, [_district_record()])

    payload = result.as_dict()

    assert payload["year"] == 2023
    assert payload["districtsProcessed"] == 1
    assert payload["districtsSkipped"] == 0
    assert payload["cellsGenerated"] == result.cells_generated
    assert payload["dimensions"] == {
        "ageGroups": 6,
        "sexes": 2,
        "raceEth": 5,
        "education": 5,
        "censusRegions": 5,
    }


def test_empty_input_is_a_structural_failure() -> None:
    with pytest.raises(EmptyInputError):
        build_poststrat_cells(2023, [])


def test_build_table_hands_cells_to_store() -> None:
    class RecordingStore:
        def __init__(self) -> None:
            self.batches: list[tuple[int, int]] = []

        def insert_cells(self, cells, batch_size=5000):  # type: ignore[no-untyped-def]
            self.batches.append((len(cells), batch_size))
            return len(cells)

    store = RecordingStore()
    result = build_poststrat_table(2023, [_district_record()], store, batch_size=50)

    assert store.batches == [(result["cellsGenerated"], 50)]
    assert result["cellsStored"] == result["cellsGenerated"]


def test_summarize_cells() -> None:
    cells, _ = build_poststrat_cells(2023, [_district_record("48", "32"), _district_record("48", "33")])

    summary = summarize_cells(cells)

    assert summary["totalCells"] == len(cells)
    assert summary["districtsCount"] == 2
    assert summary["totalPopulation"] == sum(c.population for c in cells)
    assert summary["averageCellsPerDistrict"] == round_half_up(len(cells) / 2)
    assert summarize_cells([])["averageCellsPerDistrict"] == 0


def test_repeated_district_is_skipped_not_double_counted() -> None:
    first = _district_record("48", "32")
    repeat = _district_record("48", "32", scale=2)

    cells, result = build_poststrat_cells(2023, [first, repeat, _district_record("48", "7")])

    keys = [cell.key for cell in cells]
    assert len(keys) == len(set(keys))
    assert result.districts_processed == 2
    assert result.districts_skipped == 1
    assert result.skipped[0].reason == "Duplicate geography TX-32"
    # The first occurrence wins.
    expected, _ = build_poststrat_cells(2023, [first])
    assert [c for c in cells if c.cd == "TX-32"] == expected


def test_unpadded_district_code_is_the_same_geography() -> None:
    _, result = build_poststrat_cells(2023, [_district_record("48", "07"), _district_record("48", "7")])

    assert result.districts_processed == 1
    assert [item.reason for item in result.skipped] == ["Duplicate geography TX-07"]
