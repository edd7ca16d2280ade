"""
Scenario model construction and solving.

This module reads a scenario database, builds a Pyomo model that minimizes total
discounted cost while meeting fuel demand, solves it and writes the requested
variables back to the database.

## Index fields

Variables and constraints are indexed by short field names that are also the column
names of the result tables:

- `r` region, `t` technology, `f` fuel, `y` year, `l` time slice,
  `m` mode of operation, `s` storage, `n` node

## Constraint families

Most families are built with :func:`esmopt.constraints.build_grouped_constraints`
from a query sorted by the family's key fields:

- CAa1_TotalNewCapacity (r, t, y): capacity built within a technology's operational
  life accumulates
- CAa3_TotalActivityOfEachTechnology (r, t, l, y): activity by mode sums to total
  activity
- EBa2_RateOfFuelProduction2 (r, l, t, f, y): activity times output activity ratio
  sums to production by technology
- EBa3_RateOfFuelProduction3 (r, l, f, y): production by technology sums to
  non-nodal production
- Acc1_FuelProductionByTechnology (r, t, f, y): production rate times year split sums
  to annual production by technology
- NodalProduction (n, l, f, y): technology production distributed to nodes
- VRateOfProduction1 (r, l, f, y): total production is nodal production where
  transmission modelling is enabled and non-nodal production otherwise
- NS1_RateOfStorageCharge, NS2_RateOfStorageDischarge (r, l, s, y)
- NS8_StorageLevelYearEnd (r, s, y): net storage charge over a year changes the
  year-end storage level
- TDC2_TotalDiscountedCost (r, y): discounted capital and variable costs

EQ_SpecifiedDemand, CAa2_TotalAnnualCapacity, CAa4_Constraint_Capacity and
EBa9_EnergyBalance hold one constraint per query row.

Technology production is keyed on the output activity ratio support query: a
(region, time slice, technology, fuel, year) combination exists only where a
technology has a nonzero output activity ratio for the fuel. With
``restrictvars`` the production variables are declared over exactly that support.
"""

from datetime import datetime
from functools import partial
from typing import Callable, Dict, Optional, Tuple

import pandas as pd
import pyomo.environ as pyo
from loguru import logger
from pyomo.opt import ProblemFormat

from esmopt.config import ScenarioOptions
from esmopt.constraints import build_grouped_constraints, iter_rows
from esmopt.database import connect, query, read_sets
from esmopt.postprocessing import drop_result_tables, save_var_results
from esmopt.solver import PyomoSolver, SolveOutcome
from esmopt.variables import declare_variable

DEFAULT_DISCOUNT_RATE = 0.05

# Technology/fuel combinations with a nonzero output activity ratio, expanded over
# the time slices of each year
OAR_SUPPORT = """select oar.r as r, ys.l as l, oar.t as t, oar.f as f, oar.m as m,
    oar.y as y, cast(oar.val as real) as oar, cast(ys.val as real) as ys
from OutputActivityRatio oar, YearSplit ys, REGION r, TECHNOLOGY t, FUEL f,
    MODE_OF_OPERATION m, TIMESLICE l, YEAR y
where oar.r = r.val and oar.t = t.val and oar.f = f.val and oar.m = m.val
and oar.y = y.val and ys.l = l.val and ys.y = oar.y
and oar.val <> 0"""

DEMAND_QUERY = """select sdp.r as r, sdp.f as f, sdp.l as l, sdp.y as y,
    cast(sdp.val as real) as specifieddemandprofile,
    cast(sad.val as real) as specifiedannualdemand, cast(ys.val as real) as ys
from SpecifiedDemandProfile sdp, SpecifiedAnnualDemand sad, YearSplit ys
where sad.r = sdp.r and sad.f = sdp.f and sad.y = sdp.y
and ys.l = sdp.l and ys.y = sdp.y
and sdp.val <> 0 and sad.val <> 0 and ys.val <> 0
order by sdp.r, sdp.l, sdp.f, sdp.y"""


def _add_rowwise_constraints(
    model: pyo.ConcreteModel,
    name: str,
    rows: pd.DataFrame,
    rule: Callable,
    quiet: bool = False,
) -> pyo.ConstraintList:
    """Add one constraint per row, as returned by ``rule(row)``."""
    constraints = pyo.ConstraintList(doc=f"Constraint family {name}")
    model.add_component(name, constraints)
    for row in iter_rows(rows):
        constraints.add(rule(row))
    log = logger.debug if quiet else logger.info
    log(f"Created constraint {name}.")
    return constraints


def _value_or(value, default: float) -> float:
    return default if pd.isna(value) else float(value)


def create_model(
    db,
    options: Optional[ScenarioOptions] = None,
    name: str = "esmopt",
    debug_path: str = None,
) -> pyo.ConcreteModel:
    """
    Build the scenario model from the data in `db`.

    Parameters
    ----------
    db : sqlite3.Connection
        Scenario database, opened with :func:`esmopt.database.connect`.
    options : ScenarioOptions, optional
        Build options. ``restrictvars`` selects sparse declarations for the technology
        production variables; ``n_jobs`` and ``min_rows_per_worker`` control the
        parallel sparse index builder; ``check_row_order`` enables the grouping
        order check; ``quiet`` demotes progress messages to DEBUG.
    name : str, optional
        Name of the Pyomo model instance.
    debug_path : str, optional
        If provided, the LP formulation is written to this file.

    Returns
    -------
    pyo.ConcreteModel
        The model, with ``var_indices`` mapping variable names to
        ``(variable, [index fields])``.
    """
    options = options or ScenarioOptions()
    quiet = options.quiet
    m = pyo.ConcreteModel(name=name)
    m.var_indices = {}

    logger.info("Creating sets")
    sets = read_sets(db)
    # dimen=1 keeps the dimension known when a set is empty (no storage, no nodes)
    m.REGION = pyo.Set(dimen=1, initialize=sets["REGION"], doc="Regions, indexed by r")
    m.TECHNOLOGY = pyo.Set(
        dimen=1, initialize=sets["TECHNOLOGY"], doc="Technologies, indexed by t"
    )
    m.FUEL = pyo.Set(dimen=1, initialize=sets["FUEL"], doc="Fuels, indexed by f")
    m.YEAR = pyo.Set(dimen=1, initialize=sets["YEAR"], doc="Years, indexed by y")
    m.TIMESLICE = pyo.Set(
        dimen=1, initialize=sets["TIMESLICE"], doc="Time slices, indexed by l"
    )
    m.MODE_OF_OPERATION = pyo.Set(
        dimen=1,
        initialize=sets["MODE_OF_OPERATION"],
        doc="Modes of operation, indexed by m",
    )
    m.STORAGE = pyo.Set(dimen=1, initialize=sets["STORAGE"], doc="Storage, indexed by s")
    m.NODE = pyo.Set(
        dimen=1, initialize=sets["NODE"], doc="Transmission nodes, indexed by n"
    )

    logger.info("Creating variables")
    var = partial(
        declare_variable,
        m,
        n_jobs=options.n_jobs,
        min_rows_per_worker=options.min_rows_per_worker,
    )
    rtfy = (["REGION", "TIMESLICE", "FUEL", "YEAR"], ["r", "l", "f", "y"])

    var("vnewcapacity", ["REGION", "TECHNOLOGY", "YEAR"], ["r", "t", "y"],
        doc="New capacity installed in year y")
    var("vaccumulatednewcapacity", ["REGION", "TECHNOLOGY", "YEAR"], ["r", "t", "y"],
        doc="New capacity installed up to year y and still in operation")
    var("vtotalcapacityannual", ["REGION", "TECHNOLOGY", "YEAR"], ["r", "t", "y"],
        doc="Total capacity including residual capacity")
    var("vrateofactivity",
        ["REGION", "TIMESLICE", "TECHNOLOGY", "MODE_OF_OPERATION", "YEAR"],
        ["r", "l", "t", "m", "y"], doc="Rate of activity by mode of operation")
    var("vrateoftotalactivity", ["REGION", "TECHNOLOGY", "TIMESLICE", "YEAR"],
        ["r", "t", "l", "y"], doc="Rate of activity over all modes")

    oar_support = query(db, f"{OAR_SUPPORT} order by r, l, t, f, y")
    var("vrateofproductionbytechnologynn",
        ["REGION", "TIMESLICE", "TECHNOLOGY", "FUEL", "YEAR"], ["r", "l", "t", "f", "y"],
        rows=oar_support, restrict=options.restrictvars,
        doc="Rate of production of a fuel by a technology")
    var("vproductionbytechnologyannual", ["REGION", "TECHNOLOGY", "FUEL", "YEAR"],
        ["r", "t", "f", "y"], rows=oar_support, restrict=options.restrictvars,
        doc="Annual production of a fuel by a technology")

    var("vrateofproductionnn", *rtfy, doc="Non-nodal rate of production")
    var("vrateofproductionnodal", ["NODE", "TIMESLICE", "FUEL", "YEAR"],
        ["n", "l", "f", "y"], doc="Nodal rate of production")
    var("vrateofproduction", *rtfy, doc="Rate of production")
    var("vrateofdemandnn", *rtfy, doc="Non-nodal rate of demand")
    var("vrateofstoragechargenn", ["REGION", "TIMESLICE", "STORAGE", "YEAR"],
        ["r", "l", "s", "y"], doc="Rate of storage charge")
    var("vrateofstoragedischargenn", ["REGION", "TIMESLICE", "STORAGE", "YEAR"],
        ["r", "l", "s", "y"], doc="Rate of storage discharge")
    var("vstoragelevelyearendnn", ["REGION", "STORAGE", "YEAR"], ["r", "s", "y"],
        doc="Storage level at the end of year y")
    var("vtotaldiscountedcost", ["REGION", "YEAR"], ["r", "y"], within=pyo.Reals,
        doc="Total discounted cost of year y")

    logger.info("Creating constraints")
    group = partial(
        build_grouped_constraints, m, check_order=options.check_row_order, quiet=quiet
    )

    _add_demand_constraints(m, db, quiet)
    _add_capacity_constraints(m, db, group, quiet)
    _add_production_constraints(m, db, group, oar_support)
    _add_storage_constraints(m, db, group)
    _add_cost_constraints(m, db, group)

    m.OBJ = pyo.Objective(
        expr=pyo.quicksum(m.vtotaldiscountedcost[r, y] for r in m.REGION for y in m.YEAR),
        sense=pyo.minimize,
    )
    logger.info("Defined model objective.")

    if debug_path is not None:
        m.write(
            debug_path,
            io_options={"symbolic_solver_labels": True},
            format=ProblemFormat.cpxlp,
        )
    return m


def _add_demand_constraints(m: pyo.ConcreteModel, db, quiet: bool) -> None:
    demand = query(db, DEMAND_QUERY)

    _add_rowwise_constraints(
        m,
        "EQ_SpecifiedDemand",
        demand,
        lambda row: row["specifiedannualdemand"] * row["specifieddemandprofile"] / row["ys"]
        == m.vrateofdemandnn[row["r"], row["l"], row["f"], row["y"]],
        quiet,
    )

    _add_rowwise_constraints(
        m,
        "EBa9_EnergyBalance",
        demand,
        lambda row: m.vrateofproduction[row["r"], row["l"], row["f"], row["y"]]
        >= m.vrateofdemandnn[row["r"], row["l"], row["f"], row["y"]],
        quiet,
    )


def _add_capacity_constraints(m: pyo.ConcreteModel, db, group, quiet: bool) -> None:
    # Technologies without an operational life accumulate no new capacity
    group(
        "CAa1_TotalNewCapacity",
        query(
            db,
            """select r.val as r, t.val as t, y.val as y, yy.val as yy
            from REGION r, TECHNOLOGY t, YEAR y
            left join OperationalLife ol on ol.r = r.val and ol.t = t.val
            left join YEAR yy on cast(y.val as integer) - cast(yy.val as integer) >= 0
                and cast(y.val as integer) - cast(yy.val as integer) < ol.val
            order by r.val, t.val, y.val""",
        ),
        ["r", "t", "y"],
        contribution=lambda row: None
        if pd.isna(row["yy"])
        else m.vnewcapacity[row["r"], row["t"], row["yy"]],
        bound=lambda key: m.vaccumulatednewcapacity[key],
    )

    _add_rowwise_constraints(
        m,
        "CAa2_TotalAnnualCapacity",
        query(
            db,
            """select r.val as r, t.val as t, y.val as y, cast(rc.val as real) as rc
            from REGION r, TECHNOLOGY t, YEAR y
            left join ResidualCapacity rc on rc.r = r.val and rc.t = t.val and rc.y = y.val""",
        ),
        lambda row: m.vaccumulatednewcapacity[row["r"], row["t"], row["y"]]
        + _value_or(row["rc"], 0.0)
        == m.vtotalcapacityannual[row["r"], row["t"], row["y"]],
        quiet,
    )

    group(
        "CAa3_TotalActivityOfEachTechnology",
        query(
            db,
            """select r.val as r, t.val as t, l.val as l, y.val as y, m.val as m
            from REGION r, TECHNOLOGY t, TIMESLICE l, YEAR y, MODE_OF_OPERATION m
            order by r.val, t.val, l.val, y.val""",
        ),
        ["r", "t", "l", "y"],
        contribution=lambda row: m.vrateofactivity[
            row["r"], row["l"], row["t"], row["m"], row["y"]
        ],
        bound=lambda key: m.vrateoftotalactivity[key],
    )

    _add_rowwise_constraints(
        m,
        "CAa4_Constraint_Capacity",
        query(
            db,
            """select r.val as r, t.val as t, l.val as l, y.val as y,
                cast(coalesce(cf.val, 1) as real) as cf,
                cast(coalesce(cta.val, 1) as real) as cta
            from REGION r, TECHNOLOGY t, TIMESLICE l, YEAR y
            left join CapacityFactor cf on cf.r = r.val and cf.t = t.val
                and cf.l = l.val and cf.y = y.val
            left join CapacityToActivityUnit cta on cta.r = r.val and cta.t = t.val""",
        ),
        lambda row: m.vrateoftotalactivity[row["r"], row["t"], row["l"], row["y"]]
        <= m.vtotalcapacityannual[row["r"], row["t"], row["y"]] * row["cf"] * row["cta"],
        quiet,
    )


def _add_production_constraints(
    m: pyo.ConcreteModel, db, group, oar_support: pd.DataFrame
) -> None:
    by_technology = m.vrateofproductionbytechnologynn

    group(
        "EBa2_RateOfFuelProduction2",
        oar_support,
        ["r", "l", "t", "f", "y"],
        contribution=lambda row: m.vrateofactivity[
            row["r"], row["l"], row["t"], row["m"], row["y"]
        ]
        * row["oar"],
        bound=lambda key: by_technology[key],
    )

    group(
        "EBa3_RateOfFuelProduction3",
        query(
            db,
            f"""select r.val as r, ys.l as l, f.val as f, ys.y as y, p.t as t
            from REGION r, YearSplit ys, FUEL f
            left join (select distinct r, l, t, f, y from ({OAR_SUPPORT})) p
                on p.r = r.val and p.l = ys.l and p.f = f.val and p.y = ys.y
            order by r.val, ys.l, f.val, ys.y""",
        ),
        ["r", "l", "f", "y"],
        contribution=lambda row: None
        if pd.isna(row["t"])
        else by_technology[row["r"], row["l"], row["t"], row["f"], row["y"]],
        bound=lambda key: m.vrateofproductionnn[key],
        empty=lambda key: 0.0,
    )

    group(
        "Acc1_FuelProductionByTechnology",
        query(
            db,
            f"""select distinct r, l, t, f, y, ys from ({OAR_SUPPORT})
            order by r, t, f, y""",
        ),
        ["r", "t", "f", "y"],
        contribution=lambda row: by_technology[
            row["r"], row["l"], row["t"], row["f"], row["y"]
        ]
        * row["ys"],
        bound=lambda key: m.vproductionbytechnologyannual[key],
    )

    group(
        "NodalProduction",
        query(
            db,
            f"""select n.val as n, p.l as l, p.f as f, p.y as y, p.r as r, p.t as t,
                cast(ntc.val as real) as ntc
            from NODE n, NodalDistributionTechnologyCapacity ntc,
                (select distinct r, l, t, f, y from ({OAR_SUPPORT})) p
            where ntc.n = n.val and n.r = p.r and ntc.t = p.t and ntc.y = p.y
            and ntc.val > 0
            order by n.val, p.l, p.f, p.y""",
        ),
        ["n", "l", "f", "y"],
        contribution=lambda row: by_technology[
            row["r"], row["l"], row["t"], row["f"], row["y"]
        ]
        * row["ntc"],
        bound=lambda key: m.vrateofproductionnodal[key],
    )

    # Nodal production replaces non-nodal production where transmission is modelled
    group(
        "VRateOfProduction1",
        query(
            db,
            """select r.val as r, ys.l as l, f.val as f, ys.y as y, tme.id as tme,
                n.val as n
            from REGION r, YearSplit ys, FUEL f
            left join TransmissionModelingEnabled tme on tme.r = r.val
                and tme.f = f.val and tme.y = ys.y
            left join NODE n on n.r = r.val
            order by r.val, ys.l, f.val, ys.y""",
        ),
        ["r", "l", "f", "y"],
        contribution=lambda row: None
        if pd.isna(row["tme"]) or pd.isna(row["n"])
        else m.vrateofproductionnodal[row["n"], row["l"], row["f"], row["y"]],
        bound=lambda key: m.vrateofproduction[key],
        empty=lambda key: m.vrateofproductionnn[key],
    )


def _storage_rate_query(table: str) -> str:
    return f"""select r.val as r, ys.l as l, s.val as s, ys.y as y,
        x.t as t, x.m as m, cast(x.val as real) as ratio
    from REGION r, YearSplit ys, STORAGE s
    left join {table} x on x.r = r.val and x.s = s.val and x.val > 0
    order by r.val, ys.l, s.val, ys.y"""


def _add_storage_constraints(m: pyo.ConcreteModel, db, group) -> None:
    def activity_term(row):
        if pd.isna(row["t"]):
            return None
        return m.vrateofactivity[row["r"], row["l"], row["t"], row["m"], row["y"]] * row["ratio"]

    group(
        "NS1_RateOfStorageCharge",
        query(db, _storage_rate_query("TechnologyToStorage")),
        ["r", "l", "s", "y"],
        contribution=activity_term,
        bound=lambda key: m.vrateofstoragechargenn[key],
        empty=lambda key: 0.0,
    )
    group(
        "NS2_RateOfStorageDischarge",
        query(db, _storage_rate_query("TechnologyFromStorage")),
        ["r", "l", "s", "y"],
        contribution=activity_term,
        bound=lambda key: m.vrateofstoragedischargenn[key],
        empty=lambda key: 0.0,
    )

    rows = query(
        db,
        """select r.val as r, s.val as s, ys.y as y, ys.l as l, cast(ys.val as real) as ys,
            cast(sls.val as real) as sls
        from REGION r, STORAGE s, YearSplit ys
        left join StorageLevelStart sls on sls.r = r.val and sls.s = s.val
        order by r.val, s.val, ys.y""",
    )
    level_start = {
        (row["r"], row["s"]): _value_or(row["sls"], 0.0) for row in iter_rows(rows)
    }
    years = sorted(m.YEAR, key=int)
    previous_year = dict(zip(years[1:], years[:-1]))

    def level_change(key: Tuple):
        r, s, y = key
        if y in previous_year:
            prior = m.vstoragelevelyearendnn[r, s, previous_year[y]]
        else:
            prior = level_start[(r, s)]
        return m.vstoragelevelyearendnn[key] - prior

    group(
        "NS8_StorageLevelYearEnd",
        rows,
        ["r", "s", "y"],
        contribution=lambda row: (
            m.vrateofstoragechargenn[row["r"], row["l"], row["s"], row["y"]]
            - m.vrateofstoragedischargenn[row["r"], row["l"], row["s"], row["y"]]
        )
        * row["ys"],
        bound=level_change,
    )


def _add_cost_constraints(m: pyo.ConcreteModel, db, group) -> None:
    discount_rates: Dict[str, float] = {
        row["r"]: row["val"]
        for row in iter_rows(query(db, "select r, cast(val as real) as val from DiscountRate"))
    }
    first_year = min((int(y) for y in m.YEAR), default=0)

    def discount_factor(r: str, y: str) -> float:
        return (1 + discount_rates.get(r, DEFAULT_DISCOUNT_RATE)) ** (int(y) - first_year)

    def cost_term(row):
        df = discount_factor(row["r"], row["y"])
        if row["kind"] == "capital":
            return row["cost"] * m.vnewcapacity[row["r"], row["t"], row["y"]] / df
        if row["kind"] == "variable":
            return (
                row["cost"]
                * m.vrateofactivity[row["r"], row["l"], row["t"], row["m"], row["y"]]
                * row["ys"]
                / df
            )
        return None

    # Every (r, y) appears at least once through the 'base' rows
    group(
        "TDC2_TotalDiscountedCost",
        query(
            db,
            """select r.val as r, y.val as y, 'base' as kind, null as t, null as l,
                null as m, null as cost, null as ys
            from REGION r, YEAR y
            union all
            select cc.r, cc.y, 'capital', cc.t, null, null, cast(cc.val as real), null
            from CapitalCost cc, REGION r, TECHNOLOGY t, YEAR y
            where cc.r = r.val and cc.t = t.val and cc.y = y.val
            union all
            select vc.r, vc.y, 'variable', vc.t, ys.l, vc.m, cast(vc.val as real),
                cast(ys.val as real)
            from VariableCost vc, YearSplit ys, REGION r, TECHNOLOGY t,
                MODE_OF_OPERATION m, TIMESLICE l, YEAR y
            where vc.r = r.val and vc.t = t.val and vc.m = m.val and vc.y = y.val
            and ys.y = vc.y and ys.l = l.val
            order by r, y""",
        ),
        ["r", "y"],
        contribution=cost_term,
        bound=lambda key: m.vtotaldiscountedcost[key],
    )


def solve_model(
    model: pyo.ConcreteModel,
    solver_name: str = "glpk",
    solver_args: Dict = None,
    solver_options: Dict = None,
    tee: bool = False,
) -> Tuple[SolveOutcome, Optional[float]]:
    """
    Solve a scenario model.

    Parameters
    ----------
    model : pyo.ConcreteModel
        Model built by :func:`create_model`.
    solver_name : str, optional
        Name of the solver (default: "glpk").
    solver_args : dict, optional
        Args to pass to SolverFactory.
    solver_options : dict, optional
        Solver-specific options.
    tee : bool, optional
        If True, prints solver output.

    Returns
    -------
    outcome : SolveOutcome
        Termination status of the solve.
    objective : float or None
        Total discounted cost, or None if the model was not solved to optimality.
    """
    solver = PyomoSolver(
        solver_name, solver_args=solver_args, solver_options=solver_options, tee=tee
    )
    outcome = solver.optimize(model)
    logger.info(f"Solved model. Solver status = {outcome.value}.")

    if outcome is not SolveOutcome.OPTIMAL:
        return outcome, None
    objective = pyo.value(model.OBJ)
    logger.info(f"Objective: {objective:.6g}")
    return outcome, objective


def calculate_scenario(
    dbpath: str,
    options: Optional[ScenarioOptions] = None,
    name: str = "esmopt",
    debug_path: str = None,
) -> SolveOutcome:
    """
    Build, solve and save a scenario stored in a SQLite database.

    Result tables of earlier runs are dropped first. Results are written only if the
    model was solved to optimality.

    Parameters
    ----------
    dbpath : str
        Path to the scenario database.
    options : ScenarioOptions, optional
        Run options; defaults apply when omitted.
    name : str, optional
        Name of the Pyomo model instance.
    debug_path : str, optional
        If provided, the LP formulation is written to this file.

    Returns
    -------
    SolveOutcome
        Termination status of the solve.
    """
    options = options or ScenarioOptions()
    logger.info(f"Started scenario calculation for {dbpath}.")

    db = connect(dbpath)
    try:
        drop_result_tables(db, quiet=options.quiet)
        model = create_model(db, options, name=name, debug_path=debug_path)
        outcome, _ = solve_model(
            model,
            solver_name=options.solver_name,
            solver_options=options.solver_options,
            tee=options.tee,
        )
        solvedtm = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        if outcome is SolveOutcome.OPTIMAL:
            save_var_results(
                options.varstosave,
                model.var_indices,
                db,
                solvedtm,
                reportzeros=options.reportzeros,
                quiet=options.quiet,
                n_jobs=options.n_jobs,
            )
            logger.info("Finished saving results to database.")
        else:
            logger.warning(
                f"Model was not solved to optimality ({outcome.value}); "
                "no results saved."
            )
    finally:
        db.close()

    logger.info("Finished scenario calculation.")
    return outcome
