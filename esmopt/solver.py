"""
Thin wrapper around Pyomo solvers.

The rest of esmopt only needs to know whether a solve ended optimally, infeasibly or
some other way. :class:`PyomoSolver` runs a Pyomo solver plugin, loads the solution
into the model only when the solve was optimal, and reports the outcome as a
:class:`SolveOutcome`.
"""

from enum import Enum
from typing import Any, Dict, Optional

import pyomo.environ as pyo
from loguru import logger
from pyomo.opt import SolverResults

TC = pyo.TerminationCondition


class SolveOutcome(Enum):
    """Termination status of a solve as seen by esmopt."""

    OPTIMAL = "optimal"
    INFEASIBLE = "infeasible"
    INFEASIBLE_OR_UNBOUNDED = "infeasible_or_unbounded"
    DUAL_INFEASIBLE = "dual_infeasible"
    LOCALLY_INFEASIBLE = "locally_infeasible"
    OTHER = "other"

    @property
    def is_infeasible(self) -> bool:
        return self in INFEASIBLE_OUTCOMES

    @classmethod
    def from_termination(cls, condition) -> "SolveOutcome":
        """Map a Pyomo ``TerminationCondition`` to a :class:`SolveOutcome`."""
        return _TERMINATION_MAP.get(condition, cls.OTHER)


INFEASIBLE_OUTCOMES = frozenset(
    {
        SolveOutcome.INFEASIBLE,
        SolveOutcome.INFEASIBLE_OR_UNBOUNDED,
        SolveOutcome.DUAL_INFEASIBLE,
        SolveOutcome.LOCALLY_INFEASIBLE,
    }
)

_TERMINATION_MAP = {
    TC.optimal: SolveOutcome.OPTIMAL,
    TC.globallyOptimal: SolveOutcome.OPTIMAL,
    TC.infeasible: SolveOutcome.INFEASIBLE,
    TC.infeasibleOrUnbounded: SolveOutcome.INFEASIBLE_OR_UNBOUNDED,
    TC.unbounded: SolveOutcome.DUAL_INFEASIBLE,
}


class PyomoSolver:
    """
    Solve Pyomo models with a named solver plugin.

    Parameters
    ----------
    solver_name : str, optional
        Name passed to ``pyo.SolverFactory`` (default: "glpk").
    solver_args : dict, optional
        Args to pass to SolverFactory.
    solver_options : dict, optional
        Solver-specific options, e.g. ``tmlim`` or ``mipgap``.
    tee : bool, optional
        If True, prints solver output.
    """

    def __init__(
        self,
        solver_name: str = "glpk",
        solver_args: Optional[Dict[str, Any]] = None,
        solver_options: Optional[Dict[str, Any]] = None,
        tee: bool = False,
    ):
        self.solver_name = solver_name
        self.solver = pyo.SolverFactory(solver_name, **(solver_args or {}))
        for opt, val in (solver_options or {}).items():
            self.solver.options[opt] = val
        self.tee = tee
        self.last_results: Optional[SolverResults] = None

    def available(self) -> bool:
        return bool(self.solver.available(exception_flag=False))

    def optimize(self, model: pyo.ConcreteModel) -> SolveOutcome:
        """
        Solve `model` and return its outcome.

        The solution is loaded into the model's variables only when the outcome is
        optimal, so an infeasible solve never leaves stale or partial values behind.
        The raw results of the call are kept in :attr:`last_results`.
        """
        results = self.solver.solve(model, tee=self.tee, load_solutions=False)
        self.last_results = results
        condition = results.solver.termination_condition
        outcome = SolveOutcome.from_termination(condition)
        if outcome is SolveOutcome.OPTIMAL:
            model.solutions.load_from(results)
        logger.debug(f"Solver [{self.solver_name}] termination: {condition}")
        return outcome
