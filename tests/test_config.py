import pytest
from pydantic import ValidationError

from esmopt.config import DEFAULT_VARSTOSAVE, ScenarioOptions


def test_defaults():
    options = ScenarioOptions()
    assert options.varstosave == DEFAULT_VARSTOSAVE
    assert options.restrictvars is True
    assert options.reportzeros is False
    assert options.n_jobs is None
    assert options.solver_name == "glpk"


def test_default_list_is_not_shared():
    first = ScenarioOptions()
    first.varstosave.append("vextra")
    assert ScenarioOptions().varstosave == DEFAULT_VARSTOSAVE


def test_varstosave_from_comma_string():
    options = ScenarioOptions(varstosave=" vnewcapacity, vtotaldiscountedcost,, ")
    assert options.varstosave == ["vnewcapacity", "vtotaldiscountedcost"]


@pytest.mark.parametrize(
    "kwargs",
    [{"n_jobs": 0}, {"n_jobs": -2}, {"min_rows_per_worker": 0}],
)
def test_invalid_worker_settings(kwargs):
    with pytest.raises(ValidationError):
        ScenarioOptions(**kwargs)


def test_save_and_load(tmp_path):
    path = tmp_path / "options.json"
    options = ScenarioOptions(
        varstosave="vnewcapacity",
        n_jobs=2,
        solver_options={"tmlim": 60},
        reportzeros=True,
    )
    options.save(str(path))

    loaded = ScenarioOptions.load(str(path))

    assert loaded == options
    assert loaded.solver_options == {"tmlim": 60}


def test_load_fills_missing_keys(tmp_path):
    path = tmp_path / "options.json"
    path.write_text('{"restrictvars": false}')
    loaded = ScenarioOptions.load(str(path))
    assert loaded.restrictvars is False
    assert loaded.varstosave == DEFAULT_VARSTOSAVE
