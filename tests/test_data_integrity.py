import pytest
import sys
from datetime import date
from pathlib import Path
import tempfile
import os
import json

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from manhour_planner.config import PlannerSettings
from manhour_planner.data_manager import DataManager, APP_VERSION
from manhour_planner.errors import DataFileCorruptedError, PersistenceWriteFailedError
from manhour_planner.state_manager import StateManager

MONDAY = date(2025, 1, 6)
TUESDAY = date(2025, 1, 7)


@pytest.fixture
def data_file():
    """Fixture for an isolated planner document path."""
    with tempfile.NamedTemporaryFile(
        mode="w", suffix=".json", delete=False
    ) as temp_file:
        temp_path = temp_file.name
        json.dump({}, temp_file)

    yield temp_path
    for path in (Path(temp_path), Path(temp_path).with_suffix(".bak"), Path(temp_path).with_suffix(".tmp")):
        if path.exists():
            os.unlink(path)


@pytest.fixture
def manager(data_file):
    """Fixture for a StateManager that saves after every change."""
    return StateManager.from_data_manager(DataManager(data_file))


def test_empty_document_gets_all_sections(data_file):
    """
    Why this is important: An empty or partial document must still load into
    a complete state, otherwise the first edit after install would crash.
    """
    dm = DataManager(data_file)
    for key in ("settings", "estimates", "allocations", "capacityBlocks", "companyHolidays", "actuals"):
        assert key in dm.data

    state = dm.load_state()
    assert state.estimates == {}
    assert state.settings.base_capacity_hours == 8.0


def test_state_round_trips_through_file(manager, data_file):
    """
    Why this is important: Everything the user entered must come back
    unchanged after a restart, including pins, blocks and actuals.
    """
    estimate = manager.create_estimate("Login", 20, start_date=MONDAY, version="v1", process="UI")
    manager.pin(estimate.id, "2025-01-07", 4)
    manager.split(estimate.id, 5, today=MONDAY)
    manager.add_capacity_block("2025-01-08", "vacation", 8, note="Dentist")
    manager.add_company_holiday("Founding day", "2025-01-10")
    manager.record_actual(estimate.id, MONDAY, 7.5, note="Initial work")
    manager.set_remaining(estimate.id, 10)

    assert manager.last_save_error is None
    reloaded = DataManager(data_file).load_state()
    assert reloaded.to_dict() == manager.state.to_dict()
    assert reloaded.allocations == manager.state.allocations


def test_saved_document_uses_camel_case_records(manager, data_file):
    manager.create_estimate("Login", 10, start_date=MONDAY)

    with open(data_file, "r", encoding="utf-8") as f:
        saved = json.load(f)

    assert saved["settings"]["appVersion"] == APP_VERSION
    assert saved["estimates"][0]["totalHours"] == 10.0
    assert saved["estimates"][0]["startDate"] == "2025-01-06"
    assert {"estimateId", "date", "amount", "manual"} <= set(saved["allocations"][0])


def test_save_keeps_backup_of_previous_version(manager, data_file):
    manager.create_estimate("Login", 10, start_date=MONDAY)
    manager.create_estimate("Signup", 4, start_date=MONDAY)

    backup = Path(data_file).with_suffix(".bak")
    assert backup.exists()
    with open(backup, "r", encoding="utf-8") as f:
        assert len(json.load(f)["estimates"]) == 1
    assert not Path(data_file).with_suffix(".tmp").exists()


def test_corrupted_file_recovers_from_backup(manager, data_file):
    """
    Why this is important: A crash in the middle of writing must not lose
    all planning data. The previous version is restored from the backup.
    """
    manager.create_estimate("Login", 10, start_date=MONDAY)
    manager.create_estimate("Signup", 4, start_date=MONDAY)

    with open(data_file, "w", encoding="utf-8") as f:
        f.write("{ this is not json")

    recovered = DataManager(data_file).load_state()
    assert [e.title for e in recovered.ordered_estimates()] == ["Login"]


def test_corrupted_file_without_backup_raises(data_file):
    with open(data_file, "w", encoding="utf-8") as f:
        f.write("[1, 2")

    with pytest.raises(DataFileCorruptedError):
        DataManager(data_file)


def test_corrupted_file_and_backup_fall_back_to_defaults(data_file):
    with open(data_file, "w", encoding="utf-8") as f:
        f.write("not json")
    with open(Path(data_file).with_suffix(".bak"), "w", encoding="utf-8") as f:
        f.write("not json either")

    dm = DataManager(data_file)
    assert dm.data["estimates"] == []


def test_missing_file_recovers_from_backup(manager, data_file):
    manager.create_estimate("Login", 10, start_date=MONDAY)
    manager.create_estimate("Signup", 4, start_date=MONDAY)
    os.unlink(data_file)

    recovered = DataManager(data_file).load_state()
    assert len(recovered.estimates) == 1
    assert Path(data_file).exists()


def test_legacy_vacations_are_migrated(data_file):
    """
    Why this is important: Documents written before capacity blocks existed
    stored vacations separately. They must still reduce capacity after upgrade.
    """
    with open(data_file, "w", encoding="utf-8") as f:
        json.dump({
            "estimates": [],
            "vacations": [
                {"id": 1, "date": "2025-01-06", "hours": 4, "vacationType": "Half day"},
                {"id": 2, "date": "2025-01-07"},
            ],
        }, f)

    manager = StateManager.from_data_manager(DataManager(data_file))
    blocks = sorted(manager.state.capacity_blocks.values(), key=lambda b: b.date)

    assert [(b.kind, b.amount, b.note) for b in blocks] == [
        ("vacation", 4.0, "Half day"), ("vacation", 8.0, "")
    ]
    assert manager.capacity_of("2025-01-06") == 4.0
    assert manager.capacity_of("2025-01-07") == 0.0


def test_unwritable_location_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    dm = DataManager(str(blocker / "planner.json"))

    with pytest.raises(PersistenceWriteFailedError):
        dm.save_state(dm.load_state())


def test_lower_configured_capacity_reflows_saved_plan(manager, data_file):
    """
    Why this is important: A plan saved at 8h per day and reopened with a
    6h-day config must not keep entries above the new daily capacity.
    """
    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)

    reloaded = StateManager.from_data_manager(DataManager(data_file),
                                              PlannerSettings(base_capacity_hours=6))

    grid = reloaded.allocation_grid_for(estimate.id)
    assert {day: entry.amount for day, entry in grid.items()} == {MONDAY: 6.0, TUESDAY: 4.0}
    assert reloaded.engine.overcommitted_dates(reloaded.state) == {}
    assert reloaded.engine.check_conservation(reloaded.state) == {}

    saved = DataManager(data_file).load_state()
    assert saved.settings.base_capacity_hours == 6.0
    assert saved.allocations[(estimate.id, MONDAY)].amount == 6.0


def test_shorter_configured_horizon_reports_unallocated_hours(manager, data_file):
    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)

    reloaded = StateManager.from_data_manager(DataManager(data_file), PlannerSettings(horizon_days=1))

    assert reloaded.unallocated() == {estimate.id: 2.0}


def test_unchanged_settings_leave_allocations_alone(manager, data_file):
    manager.create_estimate("Login", 10, start_date=MONDAY)
    revision = manager.state.revision

    reloaded = StateManager.from_data_manager(DataManager(data_file),
                                              PlannerSettings(history_depth=5))

    assert reloaded.state.revision == revision
    assert reloaded.state.settings.history_depth == 5
    assert reloaded.state.allocations == manager.state.allocations


def test_relative_data_file_resolves_against_working_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    dm = DataManager()

    assert dm.data_file == tmp_path.resolve() / "data" / "manhour_data.json"
