import sqlite3

import pyomo.environ as pyo
import pytest

from esmopt.database import connect, create_scenario_db, insert_rows, table_exists
from esmopt.postprocessing import (
    drop_result_tables,
    extract_var_values,
    read_var_results,
    save_var_results,
)

SOLVEDTM = "2024-01-01 12:00:00.000"


@pytest.fixture
def db(tmp_path):
    conn = connect(tmp_path / "results.sqlite")
    create_scenario_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def solved():
    m = pyo.ConcreteModel()
    m.vnewcapacity = pyo.Var(["R1"], ["COAL", "GAS"], ["2020", "2021"])
    values = {
        ("R1", "COAL", "2020"): 0.0,
        ("R1", "COAL", "2021"): 0.0,
        ("R1", "GAS", "2020"): 12.0,
        ("R1", "GAS", "2021"): 0.0,
    }
    for idx, value in values.items():
        m.vnewcapacity[idx].value = value
    m.vtotaldiscountedcost = pyo.Var(["R1"], initialize=1297.6)
    var_indices = {
        "vnewcapacity": (m.vnewcapacity, ["r", "t", "y"]),
        "vtotaldiscountedcost": (m.vtotaldiscountedcost, ["r"]),
    }
    return m, var_indices


def test_extract_preserves_index_order():
    m = pyo.ConcreteModel()
    m.x = pyo.Var(range(50))
    for i in range(50):
        m.x[i].value = float(i)

    indices, values = extract_var_values(m.x, n_jobs=4)

    assert indices == [(i,) for i in range(50)]
    assert values == [float(i) for i in range(50)]


def test_extract_scalar_variable():
    m = pyo.ConcreteModel()
    m.x = pyo.Var(initialize=2.5)
    indices, values = extract_var_values(m.x)
    assert indices == [(None,)]
    assert values == [2.5]


def test_unset_values_count_as_zero():
    m = pyo.ConcreteModel()
    m.x = pyo.Var(["a", "b"])
    m.x["a"].value = 1.0
    assert extract_var_values(m.x, n_jobs=2)[1] == [1.0, 0.0]


def test_save_omits_zeros(db, solved):
    _, var_indices = solved

    saved = save_var_results(["vnewcapacity"], var_indices, db, SOLVEDTM)

    assert saved == ["vnewcapacity"]
    frame = read_var_results(db, "vnewcapacity")
    assert list(frame.columns) == ["r", "t", "y", "val", "solvedtm"]
    assert frame.to_records(index=False).tolist() == [
        ("R1", "GAS", "2020", 12.0, SOLVEDTM)
    ]


def test_save_reports_zeros(db, solved):
    _, var_indices = solved
    save_var_results(["vnewcapacity"], var_indices, db, SOLVEDTM, reportzeros=True)
    frame = read_var_results(db, "vnewcapacity")
    assert len(frame) == 4
    assert frame["val"].sum() == pytest.approx(12.0)


def test_save_replaces_previous_results(db, solved):
    m, var_indices = solved
    save_var_results(["vnewcapacity"], var_indices, db, "earlier")
    m.vnewcapacity["R1", "GAS", "2020"].value = 7.0
    save_var_results(["vnewcapacity"], var_indices, db, SOLVEDTM)

    frame = read_var_results(db, "vnewcapacity")
    assert frame["val"].tolist() == [7.0]
    assert frame["solvedtm"].tolist() == [SOLVEDTM]


def test_unregistered_names_are_skipped(db, solved):
    _, var_indices = solved
    saved = save_var_results(
        ["vtotaldiscountedcost", "vdoesnotexist"], var_indices, db, SOLVEDTM
    )
    assert saved == ["vtotaldiscountedcost"]
    assert not table_exists(db, "vdoesnotexist")


def test_failed_save_keeps_previous_table(db, solved):
    m, var_indices = solved
    save_var_results(["vnewcapacity"], var_indices, db, "earlier")

    # One index field too few: the insert fails after the table was recreated
    broken = {"vnewcapacity": (m.vnewcapacity, ["r", "t"])}
    with pytest.raises(sqlite3.Error):
        save_var_results(["vnewcapacity"], broken, db, SOLVEDTM)

    frame = read_var_results(db, "vnewcapacity")
    assert list(frame.columns) == ["r", "t", "y", "val", "solvedtm"]
    assert frame["solvedtm"].tolist() == ["earlier"]


def test_read_missing_results_raises(db):
    with pytest.raises(KeyError):
        read_var_results(db, "vnewcapacity")


def test_drop_result_tables_keeps_parameters(db, solved):
    _, var_indices = solved
    insert_rows(db, "VariableCost", [("R1", "GAS", "1", "2020", 5.0)])
    save_var_results(
        ["vnewcapacity", "vtotaldiscountedcost"], var_indices, db, SOLVEDTM
    )

    dropped = drop_result_tables(db)

    assert sorted(dropped) == ["vnewcapacity", "vtotaldiscountedcost"]
    assert not table_exists(db, "vnewcapacity")
    assert table_exists(db, "VariableCost")
    assert db.execute("select count(*) from VariableCost").fetchone()[0] == 1


def test_drop_result_tables_without_results(db):
    assert drop_result_tables(db, quiet=True) == []
