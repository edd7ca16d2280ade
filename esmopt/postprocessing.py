"""
Persistence of solved variable values to the scenario database.

After a solve, each requested variable is written to a table named after it, with
one text column per index field, a real ``val`` column and a ``solvedtm`` text column
holding the solve timestamp. Zero values are omitted unless ``reportzeros`` is set,
so a missing row in a result table always means "value is zero".

Key functions:
    - save_var_results: Extract solved values and replace the result tables
    - read_var_results: Read a result table back into a DataFrame
    - drop_result_tables: Remove the result tables of a previous run
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
import pyomo.environ as pyo
from loguru import logger

from esmopt.database import quote_identifier, query, table_exists, transaction
from esmopt.utils import block_bounds, resolve_n_jobs

VarIndices = Dict[str, Tuple[pyo.Var, List[str]]]


def _normalize_index(index) -> Tuple:
    return index if isinstance(index, tuple) else (index,)


def _read_block(var_data: Sequence) -> List[float]:
    # Variables the solver never saw have no value; report them as zero
    return [0.0 if v.value is None else float(v.value) for v in var_data]


def extract_var_values(
    var: pyo.Var, n_jobs: Optional[int] = None
) -> Tuple[List[Tuple], List[float]]:
    """
    Read all values of a solved variable.

    The index space is cut into contiguous, disjoint blocks, one per worker. Each
    worker reads its own block and the blocks are concatenated in order once every
    worker has finished.

    Parameters
    ----------
    var : pyo.Var
        A (possibly indexed) solved variable.
    n_jobs : int, optional
        Number of worker threads. Defaults to the CPU count.

    Returns
    -------
    indices : list of tuple
        Index tuples, in the variable's index order.
    values : list of float
        Solved values aligned with `indices`.
    """
    items = list(var.items())
    indices = [_normalize_index(idx) for idx, _ in items]
    var_data = [v for _, v in items]
    n_workers = max(1, min(resolve_n_jobs(n_jobs), len(var_data)))

    if n_workers == 1:
        return indices, _read_block(var_data)

    values: List[float] = []
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        blocks = [
            executor.submit(_read_block, var_data[start:stop])
            for start, stop in block_bounds(len(var_data), n_workers)
        ]
        for future in blocks:
            values.extend(future.result())
    return indices, values


def save_var_results(
    varnames: Iterable[str],
    var_indices: VarIndices,
    db: sqlite3.Connection,
    solvedtm: str,
    reportzeros: bool = False,
    quiet: bool = False,
    n_jobs: Optional[int] = None,
) -> List[str]:
    """
    Write the values of solved variables to result tables in `db`.

    For each name in both `varnames` and `var_indices`, the existing table of that
    name is dropped and recreated, and the rows are inserted, all within one
    transaction. If anything fails, the transaction is rolled back so the previous
    table contents stay intact, and the error is re-raised.

    Parameters
    ----------
    varnames : iterable of str
        Names of the variables to save.
    var_indices : dict
        Maps variable names to ``(variable, [index field names])``, as registered by
        :func:`esmopt.variables.declare_variable`.
    db : sqlite3.Connection
        Destination database, opened with :func:`esmopt.database.connect`.
    solvedtm : str
        Solve timestamp written to every row.
    reportzeros : bool, optional
        Also write rows whose value is zero (default: False).
    quiet : bool, optional
        Log per-variable messages at DEBUG instead of INFO level.
    n_jobs : int, optional
        Number of worker threads used to read values.

    Returns
    -------
    list of str
        Names of the variables that were saved.
    """
    log = logger.debug if quiet else logger.info
    saved = []

    for vname in varnames:
        if vname not in var_indices:
            continue
        var, fields = var_indices[vname]
        indices, values = extract_var_values(var, n_jobs=n_jobs)

        rows = [
            tuple(str(k) for k in idx) + (val, solvedtm)
            for idx, val in zip(indices, values)
            if reportzeros or val != 0.0
        ]

        columns = [f"{quote_identifier(f)} text" for f in fields] + ["val real", "solvedtm text"]
        placeholders = ", ".join("?" for _ in range(len(fields) + 2))

        with transaction(db):
            db.execute(f"drop table if exists {quote_identifier(vname)}")
            db.execute(f"create table {quote_identifier(vname)} ({', '.join(columns)})")
            db.executemany(
                f"insert into {quote_identifier(vname)} values ({placeholders})", rows
            )

        saved.append(vname)
        log(f"Saved results for {vname} to database.")

    return saved


def read_var_results(db: sqlite3.Connection, name: str) -> pd.DataFrame:
    """
    Return the result table of variable `name` as a DataFrame.

    Raises
    ------
    KeyError
        If the database holds no results for `name`.
    """
    if not table_exists(db, name):
        raise KeyError(f"No results saved for variable '{name}'.")
    return query(db, f"select * from {quote_identifier(name)}")


def drop_result_tables(db: sqlite3.Connection, quiet: bool = False) -> List[str]:
    """
    Drop all result tables (names starting with ``v``) and SQLite statistics tables.

    The drops run in one transaction. Returns the names of the dropped tables.
    """
    # Case-sensitive prefix match: VariableCost is a parameter table
    names = [
        name
        for name in query(db, "select name from sqlite_master where type = 'table'")[
            "name"
        ]
        if name.startswith("v") or name.startswith("sqlite_stat")
    ]

    with transaction(db):
        for name in names:
            db.execute(f"drop table if exists {quote_identifier(name)}")

    log = logger.debug if quiet else logger.info
    log("Dropped solved variable tables.")
    return names
