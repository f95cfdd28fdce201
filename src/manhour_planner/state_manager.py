"""
State and History Manager for the Man-hour Planner

Owns the planner state tree. Every mutation arrives as an Intent and runs
inside a transaction: the state is snapshotted first, restored if anything
fails, and pushed onto the undo history when it succeeds. After a commit,
subscribers are notified and the document is saved on a best-effort basis.
"""

import copy
import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass, field

from .actual_tracker import ActualTracker
from .allocation_engine import AllocationEngine
from .calendar_model import CalendarModel
from .config import PlannerSettings
from .data_manager import (
    DataManager, PlannerState, Estimate, AllocationEntry, ActualEntry, CapacityBlock,
    CompanyHoliday, CAPACITY_KINDS, EPSILON, round_hours, parse_date
)
from .errors import NegativeAmountError, PersistenceWriteFailedError, UnknownRecordError
from .estimate_store import EstimateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Intent:
    """A requested mutation, e.g. Intent("pin", {"estimate_id": "1", "day": ..., "amount": 3})"""
    name: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of the whole state tree"""
    state: PlannerState
    label: str
    taken_at: datetime

    @classmethod
    def capture(cls, state: PlannerState, label: str) -> 'Snapshot':
        return cls(state=copy.deepcopy(state), label=label, taken_at=datetime.now())

    def restore(self) -> PlannerState:
        # Hand out a copy so the snapshot itself is never mutated
        return copy.deepcopy(self.state)


@dataclass
class Transaction:
    label: str
    before: Snapshot
    after: Snapshot


@dataclass
class StateEvent:
    """Notification sent to subscribers"""
    kind: str  # "committed", "undo", "redo" or "save_failed"
    label: str
    snapshot: Optional[Snapshot] = None
    result: Any = None
    error: Optional[Exception] = None


class StateManager:
    """Single entry point for reading and changing planner state"""

    def __init__(self, state: Optional[PlannerState] = None,
                 data_manager: Optional[DataManager] = None,
                 calendar: Optional[CalendarModel] = None):
        self.state = state if state is not None else PlannerState()
        self.data_manager = data_manager
        self.calendar = calendar or CalendarModel()
        self.engine = AllocationEngine(self.calendar)
        self.estimate_store = EstimateStore(self.engine)
        self.actual_tracker = ActualTracker()

        self.undo_stack: List[Transaction] = []
        self.redo_stack: List[Transaction] = []
        self.last_save_error: Optional[PersistenceWriteFailedError] = None
        self._subscribers: List[Callable[[StateEvent], None]] = []

        self._handlers: Dict[str, Callable[..., Any]] = {
            "create_estimate": self.estimate_store.create,
            "update_estimate": self.estimate_store.update,
            "delete_estimate": self.estimate_store.delete,
            "set_remaining": self.estimate_store.set_remaining,
            "allocate": self.engine.allocate,
            "recompute_from": self.engine.recompute_from,
            "pin": self.engine.pin,
            "unpin": self.engine.unpin,
            "split": self.engine.split,
            "merge": self.engine.merge,
            "add_capacity_block": self._add_capacity_block,
            "remove_capacity_block": self._remove_capacity_block,
            "add_company_holiday": self._add_company_holiday,
            "remove_company_holiday": self._remove_company_holiday,
            "record_actual": self.actual_tracker.record,
            "update_actual": self.actual_tracker.update,
        }

    @classmethod
    def from_data_manager(cls, data_manager: DataManager,
                          settings: Optional[PlannerSettings] = None) -> 'StateManager':
        """Load the saved document; ``settings`` (e.g. from a config file) replace the stored ones"""
        manager = cls(state=data_manager.load_state(), data_manager=data_manager)
        if settings is not None:
            manager.apply_settings(settings)
        return manager

    def apply_settings(self, settings: PlannerSettings) -> bool:
        """
        Replace the settings of the current state.

        Stored auto entries were placed against the old daily capacity and
        horizon, so a change to either re-flows every estimate from the
        earliest start date. Returns True when allocations were recomputed.
        """
        previous = self.state.settings
        self.state.settings = settings
        if (previous.base_capacity_hours == settings.base_capacity_hours
                and previous.horizon_days == settings.horizon_days):
            return False
        if not self.state.estimates:
            return False

        start = min(e.start_date for e in self.state.estimates.values())
        logger.info(f"Calendar settings changed (capacity {previous.base_capacity_hours}h -> "
                    f"{settings.base_capacity_hours}h, horizon {previous.horizon_days} -> "
                    f"{settings.horizon_days} days), recomputing from {start}")
        self.engine.recompute_from(self.state, start)
        self.save()
        return True

    # Subscriptions
    def subscribe(self, callback: Callable[[StateEvent], None]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it again"""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self, event: StateEvent):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber failed while handling '{event.kind}' event")

    # Transactions
    @property
    def supported_intents(self) -> List[str]:
        return sorted(self._handlers)

    def dispatch(self, intent: Intent) -> Any:
        """Run one intent as a transaction and return the handler's result"""
        handler = self._handlers.get(intent.name)
        if handler is None:
            raise ValueError(f"Unsupported intent: {intent.name}")

        before = Snapshot.capture(self.state, intent.name)
        try:
            result = handler(self.state, **intent.params)
        except Exception as e:
            self.state = before.restore()
            logger.warning(f"Intent '{intent.name}' failed and was rolled back: {e}")
            raise

        after = Snapshot.capture(self.state, intent.name)
        self.undo_stack.append(Transaction(label=intent.name, before=before, after=after))
        depth = max(1, self.state.settings.history_depth)
        if len(self.undo_stack) > depth:
            del self.undo_stack[:-depth]
        self.redo_stack.clear()

        logger.debug(f"Committed '{intent.name}'")
        self._notify(StateEvent(kind="committed", label=intent.name, snapshot=after, result=result))
        self.save()
        return result

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_stack)

    def undo(self) -> bool:
        if not self.undo_stack:
            return False
        transaction = self.undo_stack.pop()
        self.state = transaction.before.restore()
        self.redo_stack.append(transaction)
        logger.info(f"Undid '{transaction.label}'")
        self._notify(StateEvent(kind="undo", label=transaction.label, snapshot=transaction.before))
        self.save()
        return True

    def redo(self) -> bool:
        if not self.redo_stack:
            return False
        transaction = self.redo_stack.pop()
        self.state = transaction.after.restore()
        self.undo_stack.append(transaction)
        logger.info(f"Redid '{transaction.label}'")
        self._notify(StateEvent(kind="redo", label=transaction.label, snapshot=transaction.after))
        self.save()
        return True

    def save(self) -> bool:
        """
        Persist the current state if a data manager is attached.

        A failed write never touches the in-memory state; it is logged, kept
        in ``last_save_error`` and announced as a ``save_failed`` event. The
        next save writes the then-current state again.
        """
        if self.data_manager is None:
            return False
        try:
            self.data_manager.save_state(self.state)
        except PersistenceWriteFailedError as e:
            self.last_save_error = e
            logger.error(f"Saving {self.data_manager.data_file} failed, changes are kept in memory: {e}")
            self._notify(StateEvent(kind="save_failed", label="save", error=e))
            return False
        self.last_save_error = None
        return True

    # Calendar inputs
    def _add_capacity_block(self, state: PlannerState, day: Any, kind: str, amount: float,
                            note: str = "") -> CapacityBlock:
        if kind not in CAPACITY_KINDS:
            raise ValueError(f"Unsupported capacity block kind: {kind}")
        amount = round_hours(amount)
        if amount < 0:
            raise NegativeAmountError(f"Blocked hours cannot be negative: {amount}")

        block = CapacityBlock(id=state.next_id(state.capacity_blocks), date=parse_date(day),
                              kind=kind, amount=amount, note=note)
        state.capacity_blocks[block.id] = block
        self.engine.recompute_from(state, block.date)
        return block

    def _remove_capacity_block(self, state: PlannerState, block_id: str) -> CapacityBlock:
        block = state.capacity_blocks.pop(str(block_id), None)
        if block is None:
            raise UnknownRecordError(f"Unknown capacity block id: {block_id}")
        self.engine.recompute_from(state, block.date)
        return block

    def _add_company_holiday(self, state: PlannerState, name: str, start_date: Any,
                             end_date: Optional[Any] = None) -> CompanyHoliday:
        start = parse_date(start_date)
        end = parse_date(end_date) if end_date is not None else start
        if end < start:
            raise ValueError(f"Holiday end {end} is before its start {start}")

        holiday = CompanyHoliday(id=state.next_id(state.company_holidays), name=name,
                                 start_date=start, end_date=end)
        state.company_holidays[holiday.id] = holiday
        self.engine.recompute_from(state, start)
        return holiday

    def _remove_company_holiday(self, state: PlannerState, holiday_id: str) -> CompanyHoliday:
        holiday = state.company_holidays.pop(str(holiday_id), None)
        if holiday is None:
            raise UnknownRecordError(f"Unknown company holiday id: {holiday_id}")
        self.engine.recompute_from(state, holiday.start_date)
        return holiday

    # Mutation intents
    def create_estimate(self, title: str, total_hours: float, start_date: Optional[Any] = None,
                        version: str = "", process: str = "") -> Estimate:
        return self.dispatch(Intent("create_estimate", {
            "title": title, "total_hours": total_hours, "start_date": start_date,
            "version": version, "process": process}))

    def update_estimate(self, estimate_id: str, **changes) -> Estimate:
        return self.dispatch(Intent("update_estimate", {"estimate_id": estimate_id, **changes}))

    def delete_estimate(self, estimate_id: str, force: bool = False) -> List[str]:
        return self.dispatch(Intent("delete_estimate", {"estimate_id": estimate_id, "force": force}))

    def set_remaining(self, estimate_id: str, hours: Optional[float]) -> Estimate:
        return self.dispatch(Intent("set_remaining", {"estimate_id": estimate_id, "hours": hours}))

    def allocate(self, estimate_id: str, from_date: Any):
        return self.dispatch(Intent("allocate", {"estimate_id": estimate_id, "from_date": from_date}))

    def recompute_from(self, from_date: Any):
        return self.dispatch(Intent("recompute_from", {"from_date": from_date}))

    def pin(self, estimate_id: str, day: Any, amount: float, clamp: bool = False) -> AllocationEntry:
        return self.dispatch(Intent("pin", {"estimate_id": estimate_id, "day": day,
                                            "amount": amount, "clamp": clamp}))

    def unpin(self, estimate_id: str, day: Any) -> bool:
        return self.dispatch(Intent("unpin", {"estimate_id": estimate_id, "day": day}))

    def split(self, estimate_id: str, at_amount: float, today: Optional[date] = None,
              title: Optional[str] = None) -> Estimate:
        return self.dispatch(Intent("split", {"estimate_id": estimate_id, "at_amount": at_amount,
                                              "today": today, "title": title}))

    def merge(self, parent_id: str, child_id: str) -> Estimate:
        return self.dispatch(Intent("merge", {"parent_id": parent_id, "child_id": child_id}))

    def add_capacity_block(self, day: Any, kind: str, amount: float, note: str = "") -> CapacityBlock:
        return self.dispatch(Intent("add_capacity_block", {"day": day, "kind": kind,
                                                           "amount": amount, "note": note}))

    def remove_capacity_block(self, block_id: str) -> CapacityBlock:
        return self.dispatch(Intent("remove_capacity_block", {"block_id": block_id}))

    def add_company_holiday(self, name: str, start_date: Any, end_date: Optional[Any] = None) -> CompanyHoliday:
        return self.dispatch(Intent("add_company_holiday", {"name": name, "start_date": start_date,
                                                            "end_date": end_date}))

    def remove_company_holiday(self, holiday_id: str) -> CompanyHoliday:
        return self.dispatch(Intent("remove_company_holiday", {"holiday_id": holiday_id}))

    def record_actual(self, estimate_id: str, day: Any, amount: float, note: str = "") -> ActualEntry:
        return self.dispatch(Intent("record_actual", {"estimate_id": estimate_id, "day": day,
                                                      "amount": amount, "note": note}))

    def update_actual(self, actual_id: str, **changes) -> ActualEntry:
        return self.dispatch(Intent("update_actual", {"actual_id": actual_id, **changes}))

    # Read-only projections
    def capacity_of(self, day: Any) -> float:
        return self.calendar.capacity_of(self.state, parse_date(day))

    def estimates_in_range(self, start: Any, end: Any) -> List[Estimate]:
        return self.estimate_store.estimates_in_range(self.state, start, end)

    def allocation_grid_for(self, estimate_id: str) -> Dict[date, AllocationEntry]:
        return self.engine.allocation_grid_for(self.state, estimate_id)

    def actuals_for(self, estimate_id: str) -> List[ActualEntry]:
        return self.actual_tracker.actuals_for(self.state, estimate_id)

    def get_estimates(self) -> List[Estimate]:
        return self.estimate_store.get_estimates(self.state)

    def unallocated(self) -> Dict[str, float]:
        """Estimates with hours the horizon could not hold"""
        return {e.id: e.unallocated_hours for e in self.state.ordered_estimates()
                if e.unallocated_hours > EPSILON}
