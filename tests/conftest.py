from fixtures.scenario_db_fixture import (  # noqa: F401
    scenario_conn,
    scenario_data,
    scenario_db,
)
