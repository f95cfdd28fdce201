import pytest
import sys
import json
from datetime import date
from pathlib import Path

import yaml

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from manhour_planner.config import get_default_config, load_config, PlannerSettings
from manhour_planner.data_manager import DataManager
from manhour_planner.main import ManhourPlannerApp, run_cli


def test_default_config():
    config = get_default_config()

    assert config["calendar"]["base_capacity_hours"] == 8.0
    assert config["allocation"]["horizon_days"] == 365
    assert config["history"]["depth"] == 100
    assert config["reporting"]["warning_threshold"] == 1.2


def test_yaml_config_is_merged_over_defaults(tmp_path):
    config_path = tmp_path / "planner.yaml"
    config_path.write_text(yaml.safe_dump({"calendar": {"base_capacity_hours": 7.5},
                                           "history": {"depth": 10}}))

    config = load_config(str(config_path))
    settings = PlannerSettings.from_config(config)

    assert settings.base_capacity_hours == 7.5
    assert settings.history_depth == 10
    assert settings.horizon_days == 365


def test_json_config(tmp_path):
    config_path = tmp_path / "planner.json"
    config_path.write_text(json.dumps({"reporting": {"warning_threshold": 1.5}}))

    assert load_config(str(config_path))["reporting"]["warning_threshold"] == 1.5


def test_bad_config_paths(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))

    ini_path = tmp_path / "planner.ini"
    ini_path.write_text("[calendar]")
    with pytest.raises(ValueError):
        load_config(str(ini_path))


def test_settings_round_trip():
    settings = PlannerSettings(base_capacity_hours=6, horizon_days=30)
    assert PlannerSettings.from_dict(settings.to_dict()) == settings


def test_cli_commands_update_document(tmp_path, capsys):
    """
    Why this is important: The command line is how the planner is scripted.
    Each command must persist its change so the next invocation sees it.
    """
    data_file = str(tmp_path / "planner.json")
    base = ["--data-file", data_file]

    assert run_cli(base + ["add-estimate", "Login", "10", "--start", "2025-01-06", "--process", "PG"]) == 0
    assert run_cli(base + ["pin", "1", "2025-01-06", "3"]) == 0
    assert run_cli(base + ["add-block", "2025-01-07", "4", "--kind", "other_work"]) == 0
    assert run_cli(base + ["record-actual", "1", "2025-01-06", "2.5"]) == 0
    assert run_cli(base + ["split", "1", "2", "--title", "Login tests", "--as-of", "2025-01-06"]) == 0

    state = DataManager(data_file).load_state()
    assert state.estimates["1"].total_hours == 8.0
    assert state.estimates["2"].title == "Login tests"
    assert state.allocations[("1", state.estimates["1"].start_date)].manual

    assert run_cli(base + ["summary"]) == 0
    assert "MAN-HOUR SUMMARY" in capsys.readouterr().out


def test_cli_reports_planner_errors(tmp_path):
    data_file = str(tmp_path / "planner.json")
    base = ["--data-file", data_file]

    assert run_cli(base + ["add-estimate", "Login", "10", "--start", "2025-01-06"]) == 0
    assert run_cli(base + ["pin", "1", "2025-01-06", "12"]) == 1
    assert run_cli(base + ["merge", "1", "1"]) == 1
    assert run_cli(base + ["record-actual", "7", "2025-01-06", "1"]) == 1


def test_cli_export(tmp_path):
    data_file = str(tmp_path / "planner.json")
    out_dir = tmp_path / "exports"

    assert run_cli(["--data-file", data_file, "add-estimate", "Login", "10"]) == 0
    assert run_cli(["--data-file", data_file, "export", "--format", "csv", "--output", str(out_dir)]) == 0
    assert len(list(out_dir.glob("*.csv"))) == 1


def test_config_capacity_applies_to_saved_plan(tmp_path):
    """
    Why this is important: Switching to a config with shorter working days
    must re-plan the saved estimates instead of leaving days overbooked.
    """
    data_file = str(tmp_path / "planner.json")
    assert run_cli(["--data-file", data_file, "add-estimate", "Login", "10", "--start", "2025-01-06"]) == 0

    config_path = tmp_path / "planner.yaml"
    config_path.write_text(yaml.safe_dump({"calendar": {"base_capacity_hours": 6}}))

    app = ManhourPlannerApp()
    assert app.initialize(str(config_path), data_file)

    assert app.manager.engine.overcommitted_dates(app.manager.state) == {}
    assert app.manager.state.allocations[("1", date(2025, 1, 6))].amount == 6.0
