"""
Generic group-by-fold constraint generation.

Most constraint families of an energy-system model share one shape: a query returns
rows sorted by a grouping key (e.g. region, technology, year), every row contributes
a term to a linear expression, and one constraint binds the accumulated expression of
each contiguous group to a variable indexed by the group key. For example:

- ``CAa1_TotalNewCapacity``: new capacity installed over a technology's operational
  life accumulates into accumulated new capacity (key ``r, t, y``).
- ``CAa3_TotalActivityOfEachTechnology``: activity by mode of operation sums to total
  activity (key ``r, t, l, y``).
- ``NS8_StorageLevelYearEnd``: storage charge minus discharge over all time slices of
  a year nets into the year-end storage level (key ``r, s, y``).

:func:`build_grouped_constraints` implements the fold once. Each family only supplies
its rows, its key fields, how a row maps to a term, what the accumulated expression
is bound to, and the comparison sense.

Rows must arrive sorted by the key fields. The builder cannot cheaply verify global
sort order, but with ``check_order=True`` it detects the only ordering fault that
corrupts the result: a key that reappears after its group was already emitted.
"""

import operator
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import pyomo.environ as pyo
from loguru import logger


class RowOrderError(ValueError):
    """Raised when grouped rows are not contiguous by grouping key."""


class Sense(Enum):
    """Comparison between an accumulated expression and its bound."""

    EQ = "=="
    LE = "<="
    GE = ">="

    def relate(self, lhs, rhs):
        """Return the Pyomo relational expression ``lhs <sense> rhs``."""
        return _RELATIONS[self](lhs, rhs)


_RELATIONS: Dict[Sense, Callable[[Any, Any], Any]] = {
    Sense.EQ: operator.eq,
    Sense.LE: operator.le,
    Sense.GE: operator.ge,
}


class ExpressionAccumulator:
    """
    Mutable weighted sum of variable terms and constants.

    Terms are collected in a list and turned into a single Pyomo expression with
    ``quicksum`` when the group is flushed, which avoids building a deep chain of
    nested sums one row at a time.
    """

    def __init__(self) -> None:
        self.terms: List[Any] = []

    def add(self, term) -> None:
        self.terms.append(term)

    @property
    def is_empty(self) -> bool:
        return not self.terms

    def expression(self):
        return pyo.quicksum(self.terms)

    def reset(self) -> None:
        self.terms = []


def iter_rows(rows: Union[pd.DataFrame, Iterable[Mapping]]) -> Iterator[Mapping]:
    """Yield rows as mappings from field name to value."""
    if isinstance(rows, pd.DataFrame):
        columns = list(rows.columns)
        for values in rows.itertuples(index=False, name=None):
            yield dict(zip(columns, values))
    else:
        yield from rows


def build_grouped_constraints(
    model: pyo.ConcreteModel,
    name: str,
    rows: Union[pd.DataFrame, Iterable[Mapping]],
    key_fields: Sequence[str],
    contribution: Callable[[Mapping], Any],
    bound: Callable[[Tuple], Any],
    sense: Union[Sense, str] = Sense.EQ,
    empty: Optional[Callable[[Tuple], Any]] = None,
    check_order: bool = True,
    quiet: bool = False,
) -> pyo.ConstraintList:
    """
    Fold sorted rows into one constraint per group of equal key values.

    For each row the key is the tuple of its `key_fields` values. When the key changes,
    a constraint ``accumulated <sense> bound(previous_key)`` is emitted and the
    accumulator is reset. The last group is emitted after the loop. Keys are compared
    as full tuples, so groups sharing a leading field are never merged.

    Parameters
    ----------
    model : pyo.ConcreteModel
        Model receiving the constraints.
    name : str
        Component name of the resulting ``ConstraintList``.
    rows : pandas.DataFrame or iterable of mappings
        Rows sorted ascending by `key_fields`. Rows may come from several sources
        (e.g. a union or an outer join) as long as they form one sorted stream.
    key_fields : sequence of str
        Grouping fields, in sort order.
    contribution : callable
        Maps a row to the term it adds to the group's expression: a variable term,
        a scaled term, a constant, or None for rows contributing nothing (such as
        unmatched outer-join rows).
    bound : callable
        Maps a group key to the expression the accumulated sum is compared with.
    sense : Sense or str, optional
        Comparison operator (``Sense.EQ``, ``Sense.LE`` or ``Sense.GE``; the strings
        ``"=="``, ``"<="`` and ``">="`` are accepted).
    empty : callable, optional
        Maps a group key to the term used instead of the accumulated expression when
        no row of the group contributed a term. Without it the empty sum is 0.
    check_order : bool, optional
        Raise :class:`RowOrderError` when a key reappears after its group was emitted
        (default: True). When False, such a group is split and emits several
        constraints.
    quiet : bool, optional
        Log the completion message at DEBUG instead of INFO level.

    Returns
    -------
    pyo.ConstraintList
        The emitted constraints, in group order. Empty input produces an empty list.

    Raises
    ------
    RowOrderError
        If `check_order` is True and the rows are not contiguous by key. The
        partly built list is removed from the model first.
    ValueError
        If `sense` is not a recognised comparison.
    """
    sense = Sense(sense)
    constraints = pyo.ConstraintList(doc=f"Grouped constraint family {name}")
    model.add_component(name, constraints)

    acc = ExpressionAccumulator()
    emitted = set()
    current_key: Optional[Tuple] = None

    def emit(key: Tuple) -> None:
        if acc.is_empty and empty is not None:
            lhs = empty(key)
        else:
            lhs = acc.expression()
        constraints.add(sense.relate(lhs, bound(key)))
        acc.reset()
        if check_order:
            emitted.add(key)

    for row in iter_rows(rows):
        row_key = tuple(row[f] for f in key_fields)

        if current_key is not None and row_key != current_key:
            emit(current_key)
            if check_order and row_key in emitted:
                model.del_component(name)
                raise RowOrderError(
                    f"Rows for {name} are not grouped by {list(key_fields)}: "
                    f"key {row_key} reappeared after its group was closed."
                )

        term = contribution(row)
        if term is not None:
            acc.add(term)

        current_key = row_key

    if current_key is not None:
        emit(current_key)

    log = logger.debug if quiet else logger.info
    log(f"Created constraint {name}.")
    return constraints
