"""
Bisection search for infeasibility-causing constraints.

Given a built model that the solver reports as infeasible, :func:`find_infeasibilities`
isolates constraints one at a time. Constraints are taken in declaration order. The
search deactivates the trailing half of the live constraints, moving them to a
reserve, and re-solves. It then keeps moving half of the remaining gap back and forth
until the boundary between "feasible prefix" and "infeasible prefix" is a single
constraint. That constraint is recorded and left deactivated, the reserve is restored
and the whole search starts over until the model solves.

Each infeasibility costs O(log n) solves. Constraints are only ever deactivated and
re-activated, never deleted and re-created, so the relative order of the model's
constraints is preserved throughout.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import pyomo.environ as pyo
from loguru import logger

from esmopt.solver import PyomoSolver, SolveOutcome

COST_VARIABLE = "vtotaldiscountedcost"


class DiagnosisStatus(Enum):
    """How an infeasibility search ended."""

    COMPLETE = "complete"
    NOT_INFEASIBLE = "not_infeasible"
    ABORTED = "aborted"


@dataclass
class DiagnosisResult:
    """Constraints identified as causing infeasibility, in the order they were found."""

    status: DiagnosisStatus
    constraints: List = field(default_factory=list)
    last_outcome: Optional[SolveOutcome] = None

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.constraints]

    @property
    def complete(self) -> bool:
        return self.status is DiagnosisStatus.COMPLETE


def live_constraints(model: pyo.ConcreteModel) -> List:
    """Active constraint data objects of `model`, in declaration order."""
    return list(model.component_data_objects(pyo.Constraint, active=True, descend_into=True))


def remove_constraints(model: pyo.ConcreteModel, n: int, reserve: List) -> None:
    """
    Deactivate the last `n` live constraints and put them at the front of `reserve`.

    The reserve stays ordered as in the model, so restoring from its front gives back
    the constraints that directly follow the live ones.
    """
    if n <= 0:
        return
    moved = live_constraints(model)[-n:]
    for con in moved:
        con.deactivate()
    reserve[:0] = moved


def add_constraints(n: int, reserve: List) -> None:
    """Re-activate the first `n` constraints of `reserve` and drop them from it."""
    for con in reserve[:n]:
        con.activate()
    del reserve[:n]


def relax_cost_bounds(
    model: pyo.ConcreteModel, name: str = COST_VARIABLE, lower: float = 0.0
) -> None:
    """Set the lower bound of every index of variable `name` to `lower`, if it exists."""
    var = model.component(name)
    if var is None:
        return
    logger.info(f"Changing bounds for {name}.")
    for v in var.values():
        v.setlb(lower)


def find_infeasibilities(
    model: pyo.ConcreteModel,
    solver: PyomoSolver,
    cost_variable: Optional[str] = COST_VARIABLE,
    cost_lower_bound: float = 0.0,
) -> DiagnosisResult:
    """
    Identify constraints that make `model` infeasible.

    Parameters
    ----------
    model : pyo.ConcreteModel
        A fully built model.
    solver : PyomoSolver
        Anything with an ``optimize(model) -> SolveOutcome`` method.
    cost_variable : str, optional
        Name of the total cost variable whose lower bound is raised before the
        search, so that negative cost bounds are not reported as infeasibilities.
        Pass None to leave all bounds untouched.
    cost_lower_bound : float, optional
        New lower bound of `cost_variable` (default: 0).

    Returns
    -------
    DiagnosisResult
        ``status`` is ``NOT_INFEASIBLE`` if the model already solves optimally (no
        constraint is touched), ``COMPLETE`` once the model solves with all constraints except
        the identified ones, and ``ABORTED`` if a solve ended neither optimal nor
        infeasible. An aborted search still returns the constraints found so far.

    Notes
    -----
    Identified constraints are left deactivated on return. All other constraints are
    active again, including after an aborted search.
    """
    logger.info("Verifying that model is infeasible.")
    last = solver.optimize(model)
    if not last.is_infeasible:
        logger.warning(f"Model is not infeasible ({last.value}). Exiting...")
        status = (
            DiagnosisStatus.NOT_INFEASIBLE
            if last is SolveOutcome.OPTIMAL
            else DiagnosisStatus.ABORTED
        )
        return DiagnosisResult(status, [], last)

    if cost_variable is not None:
        relax_cost_bounds(model, cost_variable, cost_lower_bound)

    reserve: List = []
    found: List = []

    def abort(outcome: SolveOutcome) -> DiagnosisResult:
        add_constraints(len(reserve), reserve)
        logger.warning(
            "While searching for infeasibilities, found a combination of constraints "
            f"that could not be optimized or proven infeasible ({outcome.value}). "
            "Any infeasibilities found to this point are in the result. Exiting..."
        )
        return DiagnosisResult(DiagnosisStatus.ABORTED, found, outcome)

    total = len(live_constraints(model))
    logger.info(
        f"Model contains {total} constraints that will be evaluated for infeasibilities."
    )
    logger.info("Beginning infeasibility search.")

    while True:
        last_good = 0
        last_inf = total
        last_in_model = total

        while last_inf != last_good + 1:
            if last_inf == 0:
                # Infeasible with no constraints left: caused by variable bounds.
                logger.warning("Model is infeasible without any constraints.")
                return abort(last)

            n_move = math.ceil((last_inf - last_good) / 2)
            if last.is_infeasible:
                remove_constraints(model, n_move, reserve)
                last_in_model -= n_move
                logger.debug(f"Temporarily removed {n_move} constraints from model.")
            else:
                add_constraints(n_move, reserve)
                last_in_model += n_move
                logger.debug(f"Added {n_move} constraints back to model.")

            last = solver.optimize(model)
            if last.is_infeasible:
                last_inf = last_in_model
            elif last is SolveOutcome.OPTIMAL:
                last_good = last_in_model
            else:
                return abort(last)

        if last.is_infeasible:
            target = live_constraints(model)[-1]
            target.deactivate()
        else:
            target = reserve.pop(0)
        found.append(target)
        logger.info(
            f"Found an infeasibility: {target.name}. Saving and continuing search."
        )

        n_restore = len(reserve)
        add_constraints(n_restore, reserve)
        logger.debug(f"Added {n_restore} constraints back to model.")

        last = solver.optimize(model)
        if last is SolveOutcome.OPTIMAL:
            break
        if not last.is_infeasible:
            return abort(last)
        total = len(live_constraints(model))

    logger.info(f"Infeasibility search complete: found {len(found)} constraint(s).")
    return DiagnosisResult(DiagnosisStatus.COMPLETE, found, last)
