import pandas as pd
import pyomo.environ as pyo
import pytest

from esmopt.constraints import (
    ExpressionAccumulator,
    RowOrderError,
    Sense,
    build_grouped_constraints,
)

ROWS = pd.DataFrame(
    [("R1", "2020", 5.0), ("R1", "2021", 3.0), ("R2", "2020", 1.0)],
    columns=["r", "y", "val"],
)


def satisfied(con, tol=1e-9):
    body = pyo.value(con.body)
    lower = None if con.lower is None else pyo.value(con.lower)
    upper = None if con.upper is None else pyo.value(con.upper)
    return (lower is None or body >= lower - tol) and (upper is None or body <= upper + tol)


@pytest.fixture
def model():
    m = pyo.ConcreteModel()
    m.REGION = pyo.Set(initialize=["R1", "R2"])
    m.total = pyo.Var(m.REGION)
    m.x = pyo.Var(range(3))
    return m


def test_constant_contributions_per_group(model):
    cons = build_grouped_constraints(
        model,
        "Total",
        ROWS,
        ["r"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.total[key[0]],
    )

    assert model.Total is cons
    assert len(cons) == 2

    model.total["R1"].value = 8.0
    model.total["R2"].value = 1.0
    assert all(satisfied(c) for c in cons.values())

    model.total["R1"].value = 7.0
    assert not satisfied(cons[1])
    assert satisfied(cons[2])


def test_variable_contributions_sum_matching_rows(model):
    rows = ROWS.assign(i=[0, 1, 2])
    cons = build_grouped_constraints(
        model,
        "Total",
        rows,
        ["r"],
        contribution=lambda row: model.x[row["i"]] * row["val"],
        bound=lambda key: model.total[key[0]],
    )
    for i, value in enumerate([1.0, 2.0, 3.0]):
        model.x[i].value = value

    model.total["R1"].value = 5.0 * 1.0 + 3.0 * 2.0
    model.total["R2"].value = 1.0 * 3.0
    assert all(satisfied(c) for c in cons.values())

    model.total["R2"].value = 1.0
    assert not satisfied(cons[2])


def test_keys_compare_as_full_tuples(model):
    model.by_year = pyo.Var(["R1", "R2"], ["2020", "2021"])
    cons = build_grouped_constraints(
        model,
        "ByYear",
        ROWS,
        ["r", "y"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.by_year[key],
    )
    assert len(cons) == 3


def test_single_row_group(model):
    cons = build_grouped_constraints(
        model,
        "Single",
        ROWS.iloc[2:],
        ["r"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.total[key[0]],
    )
    assert len(cons) == 1
    model.total["R2"].value = 1.0
    assert satisfied(cons[1])


def test_empty_rows_emit_no_constraints(model):
    cons = build_grouped_constraints(
        model,
        "Nothing",
        ROWS.iloc[0:0],
        ["r"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.total[key[0]],
    )
    assert len(cons) == 0
    assert model.component("Nothing") is cons


def test_rows_as_mappings(model):
    cons = build_grouped_constraints(
        model,
        "Total",
        ROWS.to_dict("records"),
        ["r"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.total[key[0]],
    )
    assert len(cons) == 2


def test_unsorted_rows_raise(model):
    unsorted = ROWS.iloc[[0, 2, 1]]
    with pytest.raises(RowOrderError):
        build_grouped_constraints(
            model,
            "Total",
            unsorted,
            ["r"],
            contribution=lambda row: row["val"],
            bound=lambda key: model.total[key[0]],
        )


def test_unsorted_rows_leave_no_component_behind(model):
    def build(rows):
        return build_grouped_constraints(
            model,
            "Total",
            rows,
            ["r"],
            contribution=lambda row: row["val"],
            bound=lambda key: model.total[key[0]],
        )

    with pytest.raises(RowOrderError):
        build(ROWS.iloc[[0, 2, 1]])
    assert model.component("Total") is None

    cons = build(ROWS)
    assert model.Total is cons
    assert len(cons) == 2


def test_unsorted_rows_split_groups_without_check(model):
    unsorted = ROWS.iloc[[0, 2, 1]]
    cons = build_grouped_constraints(
        model,
        "Total",
        unsorted,
        ["r"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.total[key[0]],
        check_order=False,
    )
    # R1 is split in two groups, each bound to total["R1"]
    assert len(cons) == 3


def test_missing_contributions_use_fallback(model):
    model.fallback = pyo.Var(model.REGION)
    rows = pd.DataFrame(
        [("R1", 5.0), ("R2", None), ("R2", None)], columns=["r", "val"]
    )
    cons = build_grouped_constraints(
        model,
        "WithFallback",
        rows,
        ["r"],
        contribution=lambda row: None if pd.isna(row["val"]) else row["val"],
        bound=lambda key: model.total[key[0]],
        empty=lambda key: model.fallback[key[0]],
    )
    assert len(cons) == 2

    model.total["R1"].value = 5.0
    model.total["R2"].value = 4.0
    model.fallback["R2"].value = 4.0
    assert all(satisfied(c) for c in cons.values())

    model.fallback["R2"].value = 0.0
    assert not satisfied(cons[2])


def test_empty_group_without_fallback_is_zero(model):
    rows = pd.DataFrame([("R1", None)], columns=["r", "val"])
    cons = build_grouped_constraints(
        model,
        "Zero",
        rows,
        ["r"],
        contribution=lambda row: None,
        bound=lambda key: model.total[key[0]],
    )
    model.total["R1"].value = 0.0
    assert satisfied(cons[1])
    model.total["R1"].value = 1.0
    assert not satisfied(cons[1])


def test_two_sources_in_one_stream(model):
    # Union of two row sources sorted on the grouping key
    capital = [{"r": "R1", "kind": "capital", "val": 2.0}]
    variable = [
        {"r": "R1", "kind": "variable", "val": 1.0},
        {"r": "R2", "kind": "variable", "val": 4.0},
    ]
    rows = sorted(capital + variable, key=lambda row: row["r"])
    cons = build_grouped_constraints(
        model,
        "Union",
        rows,
        ["r"],
        contribution=lambda row: row["val"] * (10 if row["kind"] == "capital" else 1),
        bound=lambda key: model.total[key[0]],
    )
    model.total["R1"].value = 21.0
    model.total["R2"].value = 4.0
    assert len(cons) == 2
    assert all(satisfied(c) for c in cons.values())


@pytest.mark.parametrize(
    "sense, value, expected",
    [
        (Sense.LE, 9.0, True),
        (Sense.LE, 7.0, False),
        (">=", 7.0, True),
        (">=", 9.0, False),
        ("==", 8.0, True),
    ],
)
def test_sense(model, sense, value, expected):
    cons = build_grouped_constraints(
        model,
        "Bounded",
        ROWS.iloc[:2],
        ["r"],
        contribution=lambda row: row["val"],
        bound=lambda key: model.total[key[0]],
        sense=sense,
    )
    model.total["R1"].value = value
    assert satisfied(cons[1]) is expected


def test_unknown_sense_rejected(model):
    with pytest.raises(ValueError):
        build_grouped_constraints(
            model,
            "Bad",
            ROWS,
            ["r"],
            contribution=lambda row: row["val"],
            bound=lambda key: model.total[key[0]],
            sense="!=",
        )


def test_accumulator_reset():
    acc = ExpressionAccumulator()
    assert acc.is_empty
    acc.add(1.0)
    acc.add(2.0)
    assert pyo.value(acc.expression()) == pytest.approx(3.0)
    acc.reset()
    assert acc.is_empty
