"""
Sparse index construction for restricting decision variables to observed data.

Large energy-system variables (e.g. rate of production by technology, indexed by
region, time slice, technology, fuel and year) are mostly zero because only a few
technology/fuel combinations exist in the scenario data. Instead of declaring them
over the dense Cartesian product of their dimensions, esmopt derives their support
set from a query that lists only the meaningful index combinations.

The support set is described by a chain of "key dicts". For a column selection
``cols = [c0, c1, ..., cm]`` the builder produces ``m`` levels:

- level 1 maps ``(row[c0],)`` to the set of ``row[c1]`` values seen with that key,
- level 2 maps ``(row[c0], row[c1])`` to the set of ``row[c2]`` values,
- ...

Every row contributes to every level, and sets accumulate across the whole input,
so the result does not depend on row order. Because union merges are commutative
and associative, the input can be cut into contiguous blocks, processed by
independent workers and merged afterwards (see :func:`key_dicts_parallel`).
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import pandas as pd
from loguru import logger

from esmopt.utils import resolve_n_jobs, split_blocks

KeyDict = Dict[Tuple, Set]
Rows = Union[pd.DataFrame, Sequence[Sequence]]

DEFAULT_MIN_ROWS_PER_WORKER = 10000


def _resolve_cols(
    cols: Optional[Sequence[Union[int, str]]], numdicts: Optional[int]
) -> List[Union[int, str]]:
    if (cols is None) == (numdicts is None):
        raise ValueError("Specify exactly one of 'cols' or 'numdicts'.")
    if numdicts is not None:
        if numdicts < 1:
            raise ValueError(f"numdicts must be >= 1, got {numdicts}")
        return list(range(numdicts + 1))
    cols = list(cols)
    if len(cols) < 2:
        raise ValueError(
            f"At least two columns are needed to build key dicts, got {cols}"
        )
    return cols


def _project_rows(rows: Rows, cols: Sequence[Union[int, str]]) -> List[Tuple]:
    """Reduce `rows` to plain tuples holding only the selected columns, in order."""
    if isinstance(rows, pd.DataFrame):
        if all(isinstance(c, str) for c in cols):
            frame = rows.loc[:, list(cols)]
        else:
            frame = rows.iloc[:, list(cols)]
        return list(frame.itertuples(index=False, name=None))
    return [tuple(row[c] for c in cols) for row in rows]


def _build_levels(rows: Iterable[Tuple], numlevels: int) -> List[KeyDict]:
    levels: List[KeyDict] = [{} for _ in range(numlevels)]
    for row in rows:
        for j in range(numlevels):
            levels[j].setdefault(row[: j + 1], set()).add(row[j + 1])
    return levels


def key_dicts(
    rows: Rows,
    cols: Optional[Sequence[Union[int, str]]] = None,
    numdicts: Optional[int] = None,
) -> List[KeyDict]:
    """
    Build the chain of key dicts describing the support set of a variable.

    Parameters
    ----------
    rows : pandas.DataFrame or sequence of sequences
        Query result listing the index combinations that should exist.
    cols : sequence of int or str, optional
        Zero-based column positions (or, for DataFrames, column names) identifying
        the key fields, in dimension order. ``len(cols) - 1`` levels are built.
    numdicts : int, optional
        Shorthand for ``cols = range(numdicts + 1)``, i.e. the first
        ``numdicts + 1`` columns.

    Returns
    -------
    list of dict
        Level ``i`` (0-based in the list) maps tuples of the first ``i + 1`` key
        values to the set of values observed in the next key field. Empty input
        yields empty levels.

    Raises
    ------
    ValueError
        If neither or both of `cols` and `numdicts` are given, or fewer than two
        columns are selected.

    Examples
    --------
    >>> rows = [("R1", "T1", "F1"), ("R1", "T1", "F2"), ("R1", "T2", "F1")]
    >>> levels = key_dicts(rows, cols=[0, 1, 2])
    >>> sorted(levels[0][("R1",)])
    ['T1', 'T2']
    >>> levels[1][("R1", "T2")]
    {'F1'}
    """
    cols = _resolve_cols(cols, numdicts)
    return _build_levels(_project_rows(rows, cols), len(cols) - 1)


def merge_key_dicts(results: Iterable[List[KeyDict]]) -> List[KeyDict]:
    """
    Merge key dict chains level by level using set union.

    The merge is commutative and associative, so the order in which partial results
    arrive has no effect on the outcome. Inputs are not modified.
    """
    results = list(results)
    if not results:
        return []
    merged: List[KeyDict] = [{} for _ in results[0]]
    for levels in results:
        if len(levels) != len(merged):
            raise ValueError(
                f"Cannot merge key dicts with {len(levels)} and {len(merged)} levels."
            )
        for i, level in enumerate(levels):
            for key, values in level.items():
                merged[i].setdefault(key, set()).update(values)
    return merged


def key_dicts_parallel(
    rows: Rows,
    cols: Optional[Sequence[Union[int, str]]] = None,
    numdicts: Optional[int] = None,
    n_jobs: Optional[int] = None,
    min_rows_per_worker: int = DEFAULT_MIN_ROWS_PER_WORKER,
) -> List[KeyDict]:
    """
    Run :func:`key_dicts` on several worker processes and merge the results.

    One worker is used per `min_rows_per_worker` rows, up to `n_jobs` workers. With a
    single worker the rows are processed in the calling process. The output is
    identical to :func:`key_dicts` for any input size and worker count.

    Parameters
    ----------
    rows : pandas.DataFrame or sequence of sequences
        Query result listing the index combinations that should exist.
    cols, numdicts
        Column selection, see :func:`key_dicts`.
    n_jobs : int, optional
        Maximum number of worker processes. Defaults to the CPU count.
    min_rows_per_worker : int, optional
        Row threshold for spawning each additional worker (default: 10,000).

    Returns
    -------
    list of dict
        The merged key dict chain.
    """
    if min_rows_per_worker < 1:
        raise ValueError(
            f"min_rows_per_worker must be >= 1, got {min_rows_per_worker}"
        )
    cols = _resolve_cols(cols, numdicts)
    numlevels = len(cols) - 1
    projected = _project_rows(rows, cols)
    n_workers = min(
        resolve_n_jobs(n_jobs), (len(projected) - 1) // min_rows_per_worker + 1
    )

    if n_workers <= 1:
        return _build_levels(projected, numlevels)

    logger.debug(
        f"Building key dicts for {len(projected)} rows on {n_workers} processes"
    )
    results = []
    with ProcessPoolExecutor(max_workers=n_workers) as executor:
        future_to_block = {
            executor.submit(_build_levels, block, numlevels): p
            for p, block in enumerate(split_blocks(projected, n_workers))
        }
        for future in as_completed(future_to_block):
            results.append(future.result())

    return merge_key_dicts(results)
