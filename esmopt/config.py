"""
Run configuration for scenario calculations.

ScenarioOptions collects every switch that influences how a scenario is built, solved
and saved. It is passed explicitly to the functions that need it; esmopt keeps no
module-level configuration state.

Key classes:
    - ScenarioOptions: Validated options for calculate_scenario
"""
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

DEFAULT_VARSTOSAVE = [
    "vrateofdemandnn",
    "vnewcapacity",
    "vtotalcapacityannual",
    "vproductionbytechnologyannual",
    "vtotaldiscountedcost",
]


class ScenarioOptions(BaseModel):
    """
    Options controlling model construction, solving and result persistence.
    """

    varstosave: List[str] = Field(
        default_factory=lambda: list(DEFAULT_VARSTOSAVE),
        description=(
            "Names of the variables written to the scenario database after solving. "
            "A comma-delimited string is accepted."
        ),
    )
    restrictvars: bool = Field(
        True,
        description=(
            "Declare large variables only over the index combinations present in the "
            "scenario data instead of the full product of their dimensions."
        ),
    )
    reportzeros: bool = Field(
        False, description="Also save variable values that are zero."
    )
    n_jobs: Optional[int] = Field(
        None,
        description="Maximum number of parallel workers; None uses one per CPU.",
    )
    min_rows_per_worker: int = Field(
        10000,
        description=(
            "Rows of a support query that justify one additional worker when building "
            "sparse indices."
        ),
    )
    solver_name: str = Field("glpk", description="Pyomo solver plugin name.")
    solver_options: Dict[str, Any] = Field(
        default_factory=dict, description="Options passed to the solver."
    )
    tee: bool = Field(False, description="Print solver output.")
    quiet: bool = Field(
        False, description="Log low-priority progress messages at DEBUG level."
    )
    check_row_order: bool = Field(
        True,
        description=(
            "Raise if rows feeding a grouped constraint are not contiguous by their "
            "grouping key."
        ),
    )

    @model_validator(mode="before")
    def split_varstosave(cls, data):
        """
        Accept `varstosave` as a comma-delimited string.

        Names are stripped of surrounding whitespace and empty entries are dropped.
        """
        if isinstance(data, dict) and isinstance(data.get("varstosave"), str):
            data = dict(data)
            data["varstosave"] = [
                v.strip() for v in data["varstosave"].split(",") if v.strip()
            ]
        return data

    @model_validator(mode="after")
    def check_worker_settings(self) -> "ScenarioOptions":
        if self.n_jobs is not None and self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1 or None, got {self.n_jobs}")
        if self.min_rows_per_worker < 1:
            raise ValueError(
                f"min_rows_per_worker must be >= 1, got {self.min_rows_per_worker}"
            )
        return self

    def save(self, path: str) -> None:
        """Write the options to a JSON file."""
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ScenarioOptions":
        """Read options from a JSON file. Missing keys take their defaults."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls(**data)
