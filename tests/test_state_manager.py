import pytest
from datetime import date
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from manhour_planner.config import PlannerSettings
from manhour_planner.data_manager import PlannerState
from manhour_planner.errors import (
    NegativeAmountError, OverAllocationError, PersistenceWriteFailedError, UnknownRecordError
)
from manhour_planner.state_manager import StateManager, Intent

MONDAY = date(2025, 1, 6)
TUESDAY = date(2025, 1, 7)


@pytest.fixture
def manager():
    """Fixture for an in-memory StateManager with default settings."""
    return StateManager()


class FailingDataManager:
    """Stands in for a DataManager whose disk is full."""
    data_file = Path("unwritable.json")

    def __init__(self):
        self.attempts = 0

    def save_state(self, state):
        self.attempts += 1
        raise PersistenceWriteFailedError("No space left on device")


def test_dispatch_runs_intent(manager):
    estimate = manager.dispatch(Intent("create_estimate", {"title": "Login", "total_hours": 10,
                                                           "start_date": MONDAY}))

    assert estimate.id in manager.state.estimates
    assert manager.can_undo
    assert manager.undo_stack[-1].label == "create_estimate"


def test_unknown_intent_is_rejected(manager):
    with pytest.raises(ValueError):
        manager.dispatch(Intent("launch_rocket"))
    assert not manager.can_undo


def test_failed_intent_rolls_back_partial_changes(manager):
    """
    Why this is important: An update that fails halfway must not leave half
    of its changes behind. Here the title is set before the total is rejected.
    """
    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)
    manager.pin(estimate.id, MONDAY, 6)
    before = manager.state.to_dict()
    history_length = len(manager.undo_stack)

    with pytest.raises(OverAllocationError):
        manager.update_estimate(estimate.id, title="Renamed", total_hours=4)

    assert manager.state.to_dict() == before
    assert manager.state.estimates[estimate.id].title == "Login"
    assert len(manager.undo_stack) == history_length


def test_undo_and_redo_round_trip(manager):
    """
    Why this is important: Undo must return to exactly the earlier state, and
    redo must bring back exactly what was undone.
    """
    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)
    after_create = manager.state.to_dict()
    manager.pin(estimate.id, MONDAY, 3)
    after_pin = manager.state.to_dict()

    assert manager.undo() is True
    assert manager.state.to_dict() == after_create
    assert manager.can_redo

    assert manager.redo() is True
    assert manager.state.to_dict() == after_pin

    assert manager.undo() is True
    assert manager.undo() is True
    assert manager.state.estimates == {}
    assert manager.undo() is False


def test_new_intent_clears_redo(manager):
    manager.create_estimate("Login", 10, start_date=MONDAY)
    manager.undo()
    assert manager.can_redo

    manager.create_estimate("Signup", 4, start_date=MONDAY)
    assert not manager.can_redo
    assert manager.redo() is False


def test_history_is_trimmed_to_depth():
    manager = StateManager(PlannerState(settings=PlannerSettings(history_depth=3)))
    for i in range(5):
        manager.create_estimate(f"Task {i}", 2, start_date=MONDAY)

    assert len(manager.undo_stack) == 3
    for _ in range(3):
        assert manager.undo()
    assert manager.undo() is False
    assert len(manager.state.estimates) == 2


def test_subscribers_receive_events(manager):
    events = []
    unsubscribe = manager.subscribe(events.append)

    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)
    manager.undo()
    manager.redo()

    assert [e.kind for e in events] == ["committed", "undo", "redo"]
    assert events[0].result is estimate
    assert events[0].snapshot.state.estimates[estimate.id].title == "Login"

    unsubscribe()
    manager.create_estimate("Signup", 4, start_date=MONDAY)
    assert len(events) == 3


def test_failing_subscriber_does_not_break_commit(manager):
    def broken(event):
        raise RuntimeError("render failed")

    manager.subscribe(broken)
    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)
    assert estimate.id in manager.state.estimates


def test_snapshots_are_isolated_from_live_state(manager):
    events = []
    manager.subscribe(events.append)
    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)

    manager.update_estimate(estimate.id, title="Changed")
    assert events[0].snapshot.state.estimates[estimate.id].title == "Login"


def test_save_failure_keeps_changes_in_memory():
    """
    Why this is important: A full disk must not cost the user their edit. The
    change stays in memory and the failure is reported so it can be retried.
    """
    data_manager = FailingDataManager()
    manager = StateManager(data_manager=data_manager)
    events = []
    manager.subscribe(events.append)

    estimate = manager.create_estimate("Login", 10, start_date=MONDAY)

    assert estimate.id in manager.state.estimates
    assert isinstance(manager.last_save_error, PersistenceWriteFailedError)
    assert [e.kind for e in events] == ["committed", "save_failed"]
    assert manager.can_undo

    manager.record_actual(estimate.id, MONDAY, 2)
    assert data_manager.attempts == 2


def test_capacity_block_validation(manager):
    with pytest.raises(ValueError):
        manager.add_capacity_block(MONDAY, "sick_leave", 4)
    with pytest.raises(NegativeAmountError):
        manager.add_capacity_block(MONDAY, "vacation", -4)
    with pytest.raises(UnknownRecordError):
        manager.remove_capacity_block("42")
    with pytest.raises(UnknownRecordError):
        manager.remove_company_holiday("42")
    assert not manager.can_undo


def test_company_holiday_end_before_start_is_rejected(manager):
    with pytest.raises(ValueError):
        manager.add_company_holiday("Backwards", TUESDAY, MONDAY)


def test_projections(manager):
    first = manager.create_estimate("Login", 10, start_date=MONDAY)
    second = manager.create_estimate("Signup", 4, start_date=date(2025, 1, 20))
    manager.add_capacity_block(TUESDAY, "other_work", 2)

    assert manager.capacity_of(MONDAY) == 8.0
    assert manager.capacity_of(TUESDAY) == 6.0
    assert manager.capacity_of("2025-01-11") == 0.0
    assert [e.id for e in manager.estimates_in_range(MONDAY, TUESDAY)] == [first.id]
    assert [e.id for e in manager.get_estimates()] == [first.id, second.id]
    assert manager.unallocated() == {}


def test_estimates_in_range_includes_unplaced_estimates():
    """
    Why this is important: An estimate the horizon could not place has no
    allocation entries, yet it is the one the user most needs to see.
    """
    manager = StateManager(PlannerState(settings=PlannerSettings(horizon_days=1)))
    saturday = date(2025, 1, 11)
    estimate = manager.create_estimate("Weekend work", 10, start_date=saturday)

    assert manager.unallocated() == {estimate.id: 10.0}
    assert [e.id for e in manager.estimates_in_range(MONDAY, "2025-01-12")] == [estimate.id]
    assert manager.estimates_in_range("2025-01-13", "2025-01-17") == []
