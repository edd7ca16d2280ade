"""
Access to scenario databases.

A scenario database is a SQLite file holding the sets and parameters of one scenario
and, after a solve, one result table per saved variable. Sets are single-column tables
of text values (``NODE`` additionally records the region of each node). Parameters
are tables with one text column per key field and a real ``val`` column, with a
unique index on the key fields.

Connections are opened in autocommit mode (``isolation_level=None``) so that every
write transaction is explicit, see :func:`transaction`.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

import pandas as pd
from loguru import logger

SET_TABLES: Dict[str, List[str]] = {
    "REGION": ["val"],
    "TECHNOLOGY": ["val"],
    "FUEL": ["val"],
    "YEAR": ["val"],
    "TIMESLICE": ["val"],
    "MODE_OF_OPERATION": ["val"],
    "STORAGE": ["val"],
    "NODE": ["val", "r"],
}

PARAMETER_TABLES: Dict[str, List[str]] = {
    "YearSplit": ["l", "y"],
    "DiscountRate": ["r"],
    "SpecifiedAnnualDemand": ["r", "f", "y"],
    "SpecifiedDemandProfile": ["r", "f", "l", "y"],
    "OperationalLife": ["r", "t"],
    "ResidualCapacity": ["r", "t", "y"],
    "CapacityFactor": ["r", "t", "l", "y"],
    "CapacityToActivityUnit": ["r", "t"],
    "OutputActivityRatio": ["r", "t", "f", "m", "y"],
    "CapitalCost": ["r", "t", "y"],
    "VariableCost": ["r", "t", "m", "y"],
    "TechnologyToStorage": ["r", "t", "s", "m"],
    "TechnologyFromStorage": ["r", "t", "s", "m"],
    "StorageLevelStart": ["r", "s"],
    "NodalDistributionTechnologyCapacity": ["n", "t", "y"],
}

# Flags without a value column
FLAG_TABLES: Dict[str, List[str]] = {
    "TransmissionModelingEnabled": ["r", "f", "y"],
}

PathOrConnection = Union[str, Path, sqlite3.Connection]


def connect(path: Union[str, Path]) -> sqlite3.Connection:
    """Open a scenario database with explicit transaction control."""
    return sqlite3.connect(str(path), isolation_level=None)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run the enclosed statements as one all-or-nothing transaction.

    ``BEGIN`` is issued on entry and ``COMMIT`` on normal exit. If the block raises,
    the transaction is rolled back and the exception propagates unchanged.
    """
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def query(
    conn: sqlite3.Connection, sql: str, params: Optional[Sequence] = None
) -> pd.DataFrame:
    """Run a read query and return its rows, in the order the query specifies."""
    return pd.read_sql_query(sql, conn, params=params)


def table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "select 1 from sqlite_master where type = 'table' and name = ?", (name,)
    ).fetchone()
    return row is not None


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _create_table(
    conn: sqlite3.Connection, name: str, column_defs: List[str], unique: List[str]
) -> None:
    table = quote_identifier(name)
    conn.execute(f"create table if not exists {table} ({', '.join(column_defs)})")
    conn.execute(
        f"create unique index if not exists {quote_identifier(name + '_unique')} "
        f"on {table} ({', '.join(quote_identifier(f) for f in unique)})"
    )


def create_scenario_db(target: PathOrConnection) -> sqlite3.Connection:
    """
    Create the set, parameter and flag tables of an empty scenario database.

    Existing tables are kept. Returns the connection (opened on `target` if a path
    was given).
    """
    conn = target if isinstance(target, sqlite3.Connection) else connect(target)
    with transaction(conn):
        for name, fields in SET_TABLES.items():
            _create_table(conn, name, [f"{quote_identifier(f)} text" for f in fields], ["val"])
        for name, fields in PARAMETER_TABLES.items():
            _create_table(
                conn,
                name,
                ["id integer primary key"]
                + [f"{quote_identifier(f)} text" for f in fields]
                + ["val real"],
                fields,
            )
        for name, fields in FLAG_TABLES.items():
            _create_table(
                conn,
                name,
                ["id integer primary key"] + [f"{quote_identifier(f)} text" for f in fields],
                fields,
            )
    logger.debug("Created scenario database tables.")
    return conn


def insert_rows(
    conn: sqlite3.Connection,
    table: str,
    rows: Iterable[Sequence],
    columns: Optional[Sequence[str]] = None,
) -> int:
    """
    Insert `rows` into `table` in one transaction.

    `columns` defaults to the table's key fields (plus ``val`` for parameter tables).
    Returns the number of inserted rows.
    """
    if columns is None:
        if table in SET_TABLES:
            columns = SET_TABLES[table]
        elif table in PARAMETER_TABLES:
            columns = PARAMETER_TABLES[table] + ["val"]
        elif table in FLAG_TABLES:
            columns = FLAG_TABLES[table]
        else:
            raise ValueError(f"Unknown scenario table '{table}'; pass columns explicitly.")
    rows = [tuple(r) for r in rows]
    placeholders = ", ".join("?" for _ in columns)
    with transaction(conn):
        conn.executemany(
            f"insert into {quote_identifier(table)} "
            f"({', '.join(quote_identifier(c) for c in columns)}) values ({placeholders})",
            rows,
        )
    return len(rows)


def read_set(conn: sqlite3.Connection, name: str) -> List[str]:
    """Return the sorted values of set table `name`."""
    if name not in SET_TABLES:
        raise ValueError(f"'{name}' is not a scenario set.")
    frame = query(conn, f"select val from {quote_identifier(name)} order by val")
    return frame["val"].tolist()


def read_sets(conn: sqlite3.Connection) -> Dict[str, List[str]]:
    """Return all scenario sets keyed by table name."""
    return {name: read_set(conn, name) for name in SET_TABLES}
