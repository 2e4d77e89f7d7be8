#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import httpx
import pandas as pd

from backend.app.census_service import (
    ApiConfig,
    MissingAPIKeyError,
    UpstreamAPIError,
    fetch_acs1_year,
)
from backend.app.config import get_settings
from backend.app.table_builder import (
    DemographicCell,
    EmptyInputError,
    build_poststrat_cells,
    summarize_cells,
)
from backend.app.table_store import connect_store

EXIT_INVALID_ARGS = 2
EXIT_NO_DATA = 3
EXIT_UPSTREAM_FAILURE = 4

CELL_EXPORT_COLUMNS = [
    "year",
    "state",
    "cd",
    "ageGroup",
    "sex",
    "raceEth",
    "education",
    "censusRegion",
    "population",
]


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description=(
            "Build a poststratification table for one ACS 1-year vintage from "
            "congressional-district counts and store it in DuckDB."
        )
    )
    parser.add_argument("--year", type=int, required=True, help="ACS year, e.g. 2023.")
    parser.add_argument(
        "--db",
        type=str,
        default=settings.db_path,
        help=f"DuckDB database path (default: {settings.db_path}). Use '' to skip storing.",
    )
    parser.add_argument(
        "--input",
        type=Path,
        default=None,
        help="JSON file with a list of raw district records. Skips the Census API.",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Optional export of the generated cells (.csv or .json).",
    )
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Delete the year's existing cells before storing.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.batch_size,
        help=f"Rows per insert batch (default: {settings.batch_size}).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.census_timeout,
        help="HTTP timeout in seconds (default: 20).",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=settings.census_retries,
        help="Retry count for timeout/429/5xx failures (default: 3).",
    )
    return parser


def validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.year < 2005:
        parser.error("--year must be 2005 or later.")
    if args.batch_size <= 0:
        parser.error("--batch-size must be > 0.")
    if args.timeout <= 0:
        parser.error("--timeout must be > 0.")
    if args.retries < 0:
        parser.error("--retries must be >= 0.")
    if args.out is not None and args.out.suffix.lower() not in {".csv", ".json"}:
        parser.error("--out must end in .csv or .json.")


def load_records(args: argparse.Namespace) -> list[dict[str, Any]]:
    if args.input is not None:
        with args.input.open(encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"{args.input} must contain a JSON list of district records")
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                raise ValueError(f"{args.input}: record {index} is not a JSON object")
        return records

    config = ApiConfig(timeout=args.timeout, retries=args.retries)
    with httpx.Client(follow_redirects=True) as client:
        return fetch_acs1_year(client, args.year, api_key=get_settings().census_api_key, config=config)


def write_cells(cells: list[DemographicCell], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    rows = [cell.as_dict() for cell in cells]
    if output_path.suffix.lower() == ".csv":
        pd.DataFrame(rows, columns=CELL_EXPORT_COLUMNS).to_csv(output_path, index=False)
        return
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(rows, f, indent=2)
        f.write("\n")


def print_summary(result: dict[str, Any], summary: dict[str, int]) -> None:
    print(f"Year: {result['year']}")
    print(f"- Districts processed: {result['districtsProcessed']}")
    print(f"- Districts skipped: {result['districtsSkipped']}")
    for item in result["skipped"]:
        print(f"    {item['name'] or item['state']}: {item['reason']}")
    print(f"- Cells generated: {result['cellsGenerated']}")
    print(f"- Total population: {summary['totalPopulation']:,}")
    print(f"- Average cells per district: {summary['averageCellsPerDistrict']}")
    if "cellsStored" in result:
        print(f"- Cells stored: {result['cellsStored']}")


def run(args: argparse.Namespace) -> dict[str, Any]:
    records = load_records(args)
    cells, build = build_poststrat_cells(args.year, records)
    result = build.as_dict()

    if args.db:
        with connect_store(args.db) as store, store.transaction():
            if args.rebuild:
                result["cellsDeleted"] = store.delete_year(args.year)
            result["cellsStored"] = store.insert_cells(cells, batch_size=args.batch_size)

    if args.out is not None:
        write_cells(cells, args.out)

    print_summary(result, summarize_cells(cells))
    return result


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    validate_args(parser, args)

    try:
        run(args)
        return 0
    except EmptyInputError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_NO_DATA
    except (UpstreamAPIError, MissingAPIKeyError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_UPSTREAM_FAILURE
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_ARGS


if __name__ == "__main__":
    raise SystemExit(main())
