from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

import duckdb
import pandas as pd
from loguru import logger

from .table_builder import DEFAULT_BATCH_SIZE, DemographicCell, round_half_up

CELL_COLUMNS = [
    "year",
    "state",
    "cd",
    "age_group",
    "sex",
    "race_eth",
    "education",
    "census_region",
    "population",
]

WIRE_NAMES = {
    "age_group": "ageGroup",
    "race_eth": "raceEth",
    "census_region": "censusRegion",
}


def connect_db(db_path: str) -> duckdb.DuckDBPyConnection:
    dir_ = os.path.dirname(db_path)
    if db_path != ":memory:" and dir_:
        os.makedirs(dir_, exist_ok=True)
    return duckdb.connect(db_path)


def _rows_as_dicts(cursor: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    names = [WIRE_NAMES.get(col[0], col[0]) for col in cursor.description]
    return [dict(zip(names, row)) for row in cursor.fetchall()]


class PoststratStore:
    """Keyed append/query store for poststratification cells.

    Inserts skip rows whose identity key already exists, so rebuilding a year
    means calling ``delete_year`` first. Run both inside ``transaction()`` so
    a failed write leaves the year as it was.
    """

    def __init__(self, con: duckdb.DuckDBPyConnection):
        self.con = con
        self._in_transaction = False

    def __enter__(self) -> "PoststratStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self.con.close()

    def create_schema(self) -> None:
        self.con.execute("""
        CREATE TABLE IF NOT EXISTS poststrat_cell (
            year INTEGER,
            state TEXT,
            cd TEXT,
            age_group TEXT,
            sex TEXT,
            race_eth TEXT,
            education TEXT,
            census_region TEXT,
            population BIGINT,
            PRIMARY KEY (year, state, cd, age_group, sex, race_eth, education, census_region)
        );
        """)

    def count_cells(self, year: int) -> int:
        return self.con.execute(
            "SELECT COUNT(*) FROM poststrat_cell WHERE year = ?", [year]
        ).fetchone()[0]

    @contextmanager
    def transaction(self) -> Iterator["PoststratStore"]:
        """Commit everything written inside the block, or nothing.

        Nested blocks join the outermost transaction.
        """
        if self._in_transaction:
            yield self
            return

        self.con.begin()
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self.con.rollback()
            raise
        else:
            self.con.commit()
        finally:
            self._in_transaction = False

    def _insert_batch(self, rows: list[tuple[Any, ...]]) -> None:
        batch = pd.DataFrame(rows, columns=CELL_COLUMNS)
        self.con.register("tmp_cells", batch)
        try:
            self.con.execute(f"""
                INSERT OR IGNORE INTO poststrat_cell
                SELECT {", ".join(CELL_COLUMNS)}
                FROM tmp_cells
            """)
        finally:
            self.con.unregister("tmp_cells")

    def insert_cells(self, cells: Iterable[DemographicCell], batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        rows = [
            (c.year, c.state, c.cd, c.age_group, c.sex, c.race_eth, c.education, c.census_region, c.population)
            for c in cells
        ]

        with self.transaction():
            before = self.con.execute("SELECT COUNT(*) FROM poststrat_cell").fetchone()[0]
            for start in range(0, len(rows), batch_size):
                self._insert_batch(rows[start:start + batch_size])
                logger.debug(f"Stored {min(start + batch_size, len(rows))}/{len(rows)} cells")
            after = self.con.execute("SELECT COUNT(*) FROM poststrat_cell").fetchone()[0]

        inserted = after - before
        if inserted < len(rows):
            logger.info(f"Skipped {len(rows) - inserted} cells with existing keys")
        return inserted

    def delete_year(self, year: int) -> int:
        with self.transaction():
            n = self.count_cells(year)
            self.con.execute("DELETE FROM poststrat_cell WHERE year = ?", [year])
        return n

    def get_table(self, year: int) -> list[dict[str, Any]]:
        cursor = self.con.execute(f"""
            SELECT {", ".join(CELL_COLUMNS)}
            FROM poststrat_cell
            WHERE year = ?
            ORDER BY state, cd, age_group, sex, race_eth, education
        """, [year])
        return _rows_as_dicts(cursor)

    def get_cells_by_district(self, year: int, cd: str) -> list[dict[str, Any]]:
        cursor = self.con.execute(f"""
            SELECT {", ".join(CELL_COLUMNS)}
            FROM poststrat_cell
            WHERE year = ? AND cd = ?
            ORDER BY age_group, sex, race_eth, education
        """, [year, cd])
        return _rows_as_dicts(cursor)

    def get_table_stats(self, year: int) -> dict[str, Any]:
        total_cells, districts, total_population = self.con.execute("""
            SELECT COUNT(*), COUNT(DISTINCT cd), COALESCE(SUM(population), 0)
            FROM poststrat_cell
            WHERE year = ?
        """, [year]).fetchone()

        return {
            "year": year,
            "totalCells": int(total_cells),
            "districtsCount": int(districts),
            "totalPopulation": int(total_population),
            "averageCellsPerDistrict": round_half_up(total_cells / districts) if districts else 0,
        }


def connect_store(db_path: str) -> PoststratStore:
    store = PoststratStore(connect_db(db_path))
    store.create_schema()
    return store
