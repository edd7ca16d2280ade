"""
Declaration of decision variables over dense or sparse domains.

A variable is either declared over the full Cartesian product of its dimension sets
(dense) or only over the index tuples listed by a support query (sparse). The choice
trades model-building time and memory against the cost of analysing the data; it
never changes what the variable means. Tuples outside the declared domain do not
exist: indexing a variable with such a tuple raises ``KeyError``.

Every declared variable is registered in ``model.var_indices``, which maps variable
names to ``(variable, [index field names])``. The registry is what the result
persister uses to write solved values back to the scenario database.
"""

from functools import reduce
from typing import List, Optional, Sequence, Tuple

import pandas as pd
import pyomo.environ as pyo
from loguru import logger

from esmopt.indexing import DEFAULT_MIN_ROWS_PER_WORKER, KeyDict, key_dicts_parallel


def sparse_index_tuples(levels: Sequence[KeyDict]) -> List[Tuple]:
    """
    Enumerate the index tuples reachable through a chain of key dicts.

    Starting from each key of the first level, the walk extends the key with every
    value in the level's set and looks the extended key up in the next level, down
    to the last level. The result is exactly the set of key combinations that were
    present in the rows the chain was built from. Values are visited in sorted order
    so the enumeration is deterministic.

    Parameters
    ----------
    levels : sequence of dict
        Key dict chain produced by :func:`esmopt.indexing.key_dicts`.

    Returns
    -------
    list of tuple
        Index tuples of length ``len(levels) + 1``.

    Raises
    ------
    ValueError
        If an extended key is missing from the next level (the levels were not built
        from the same rows and column order).
    """
    if not levels:
        return []
    depth_max = len(levels) - 1
    tuples: List[Tuple] = []

    def walk(prefix: Tuple, depth: int) -> None:
        values = levels[depth].get(prefix)
        if values is None:
            raise ValueError(
                f"Key {prefix} is missing from sparse index level {depth + 1}; "
                "levels do not describe the same rows."
            )
        for value in sorted(values):
            extended = prefix + (value,)
            if depth == depth_max:
                tuples.append(extended)
            else:
                walk(extended, depth + 1)

    for key in sorted(levels[0]):
        walk(key, 0)
    return tuples


def register_variable(
    model: pyo.ConcreteModel, name: str, var: pyo.Var, index_fields: Sequence[str]
) -> None:
    """Record `var` and its index field names in ``model.var_indices``."""
    if not hasattr(model, "var_indices"):
        model.var_indices = {}
    model.var_indices[name] = (var, list(index_fields))


def declare_variable(
    model: pyo.ConcreteModel,
    name: str,
    dims: Sequence[str],
    index_fields: Sequence[str],
    rows: Optional[pd.DataFrame] = None,
    restrict: bool = False,
    within=pyo.NonNegativeReals,
    bounds: Optional[Tuple[Optional[float], Optional[float]]] = None,
    doc: Optional[str] = None,
    n_jobs: Optional[int] = None,
    min_rows_per_worker: int = DEFAULT_MIN_ROWS_PER_WORKER,
) -> pyo.Var:
    """
    Declare a decision variable on `model`, dense or restricted to observed data.

    Parameters
    ----------
    model : pyo.ConcreteModel
        Model holding the dimension sets named in `dims`.
    name : str
        Component name of the variable (e.g. ``"vrateofproductionbytechnologynn"``).
    dims : sequence of str
        Names of the model sets spanning the variable, in index order.
    index_fields : sequence of str
        Short field names for each dimension (e.g. ``["r", "l", "t", "f", "y"]``).
        They name the result table columns and, for sparse declarations, the
        columns of `rows`.
    rows : pandas.DataFrame, optional
        Support query result. Only used when `restrict` is True.
    restrict : bool, optional
        Declare the variable only over the tuples in `rows` (sparse). Ignored when
        `rows` is None.
    within : pyomo domain, optional
        Variable domain (default: ``NonNegativeReals``).
    bounds : tuple, optional
        ``(lower, upper)`` bounds.
    doc : str, optional
        Component documentation.
    n_jobs, min_rows_per_worker
        Passed to :func:`esmopt.indexing.key_dicts_parallel`.

    Returns
    -------
    pyo.Var
        The declared variable, also available as ``getattr(model, name)``.
    """
    if len(dims) != len(index_fields):
        raise ValueError(
            f"Variable {name} has {len(dims)} dimensions but {len(index_fields)} "
            "index fields."
        )
    dim_sets = []
    for d in dims:
        s = model.component(d)
        if s is None:
            raise ValueError(f"Model has no set '{d}' for variable {name}.")
        dim_sets.append(s)

    if restrict and rows is not None:
        if len(dims) == 1:
            support = sorted(set(rows[index_fields[0]]))
        else:
            levels = key_dicts_parallel(
                rows,
                cols=list(index_fields),
                n_jobs=n_jobs,
                min_rows_per_worker=min_rows_per_worker,
            )
            support = sparse_index_tuples(levels)
        index_name = f"{name}_index"
        model.add_component(
            index_name,
            pyo.Set(
                dimen=len(dims),
                initialize=support,
                within=reduce(lambda a, b: a * b, dim_sets),
                doc=f"Sparse support set of {name}",
            ),
        )
        var = pyo.Var(
            model.component(index_name), within=within, bounds=bounds, doc=doc
        )
        logger.debug(f"Declared {name} over {len(support)} sparse indices")
    else:
        var = pyo.Var(*dim_sets, within=within, bounds=bounds, doc=doc)
        logger.debug(f"Declared {name} over dense product of {', '.join(dims)}")

    model.add_component(name, var)
    register_variable(model, name, var, index_fields)
    return var
