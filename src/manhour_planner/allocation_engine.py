"""
Allocation Engine for the Man-hour Planner

Spreads each estimate's hours over the calendar one day at a time, keeps
user-pinned (manual) hours in place, and re-flows automatic hours whenever
capacity, totals or pins change.

Contention between estimates is resolved by creation order: the earliest
created estimate claims a date's free capacity first.
"""

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Any
from dataclasses import dataclass
from collections import defaultdict
import logging

from .calendar_model import CalendarModel
from .data_manager import (
    PlannerState, Estimate, AllocationEntry, EPSILON, round_hours, parse_date
)
from .errors import (
    CapacityExceededError, InvalidSplitAmountError, NegativeAmountError,
    NotSiblingEstimatesError, OverAllocationError, UnknownEstimateIdError
)

logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    """Result of allocating one estimate"""
    estimate_id: str
    from_date: date
    allocated_hours: float
    unallocated_hours: float
    message: str

    @property
    def fully_allocated(self) -> bool:
        return self.unallocated_hours <= EPSILON


class AllocationEngine:
    """Maintains allocation entries so that every estimate's hours are accounted for"""

    def __init__(self, calendar: Optional[CalendarModel] = None):
        self.calendar = calendar or CalendarModel()

    def _require_estimate(self, state: PlannerState, estimate_id: str) -> Estimate:
        estimate = state.estimates.get(str(estimate_id))
        if estimate is None:
            raise UnknownEstimateIdError(f"Unknown estimate id: {estimate_id}")
        return estimate

    def _write_entry(self, state: PlannerState, estimate_id: str, day: date,
                     amount: float, manual: bool) -> AllocationEntry:
        entry = AllocationEntry(
            estimate_id=estimate_id,
            date=day,
            amount=round_hours(amount),
            manual=manual,
            modified_at=datetime.now(),
            revision=state.next_revision()
        )
        state.allocations[entry.key] = entry
        return entry

    def _clear_auto_entries(self, state: PlannerState, from_date: date,
                            estimate_id: Optional[str] = None) -> int:
        """Drop auto entries on/after from_date, for one estimate or all of them"""
        doomed = [
            key for key, entry in state.allocations.items()
            if not entry.manual and entry.date >= from_date
            and (estimate_id is None or entry.estimate_id == estimate_id)
        ]
        for key in doomed:
            del state.allocations[key]
        return len(doomed)

    def _usage_by_date(self, state: PlannerState) -> Dict[date, float]:
        usage: Dict[date, float] = defaultdict(float)
        for entry in state.allocations.values():
            usage[entry.date] += entry.amount
        return usage

    def _release_locked_auto(self, state: PlannerState, estimate_id: str,
                             before: date, excess: float) -> float:
        """
        Give back auto hours placed before ``before``, latest date first.

        Only needed when pins made later in the calendar would push an
        estimate over its total. Returns the excess that could not be released.
        """
        locked = [e for e in state.entries_for(estimate_id) if not e.manual and e.date < before]
        for entry in reversed(locked):
            if excess <= EPSILON:
                break
            taken = min(entry.amount, excess)
            excess = round_hours(excess - taken)
            if entry.amount - taken <= EPSILON:
                del state.allocations[entry.key]
            else:
                entry.amount = round_hours(entry.amount - taken)
        return excess

    def allocate(self, state: PlannerState, estimate_id: str, from_date: Any) -> AllocationResult:
        """
        Distribute an estimate's unpinned hours forward from ``from_date``.

        The estimate's own auto entries on/after ``from_date`` are rebuilt;
        its manual entries and its auto entries before ``from_date`` stay as
        they are. Each date receives ``min(remaining, free capacity)`` until
        the hours run out or the horizon ends, in which case the leftover is
        kept on the estimate as ``unallocated_hours``.
        """
        estimate = self._require_estimate(state, estimate_id)
        from_date = parse_date(from_date)
        self._clear_auto_entries(state, from_date, estimate.id)

        entries = state.entries_for(estimate.id)
        manual_hours = sum(e.amount for e in entries if e.manual)
        locked_auto_hours = sum(e.amount for e in entries if not e.manual)
        to_allocate = round_hours(estimate.total_hours - manual_hours - locked_auto_hours)

        if to_allocate < -EPSILON:
            leftover = self._release_locked_auto(state, estimate.id, from_date, -to_allocate)
            if leftover > EPSILON:
                logger.warning(f"Estimate {estimate.id} is over-allocated by {leftover:.2f}h")
            to_allocate = 0.0

        manual_dates = {e.date for e in entries if e.manual}
        usage = self._usage_by_date(state)
        horizon_days = state.settings.horizon_days

        remaining = to_allocate
        day = from_date
        for _ in range(horizon_days):
            if remaining <= EPSILON:
                break
            if day not in manual_dates:
                free = round_hours(self.calendar.capacity_of(state, day) - usage.get(day, 0.0))
                if free > EPSILON:
                    amount = round_hours(min(remaining, free))
                    self._write_entry(state, estimate.id, day, amount, manual=False)
                    usage[day] += amount
                    remaining = round_hours(remaining - amount)
            day += timedelta(days=1)

        estimate.unallocated_hours = max(0.0, remaining)
        allocated = round_hours(to_allocate - estimate.unallocated_hours)

        if estimate.unallocated_hours > EPSILON:
            message = (f"{estimate.unallocated_hours:.2f}h of '{estimate.title}' could not be placed "
                       f"within {horizon_days} days from {from_date}")
            logger.warning(message)
        else:
            message = f"Allocated {allocated:.2f}h of '{estimate.title}' from {from_date}"
            logger.debug(message)

        return AllocationResult(
            estimate_id=estimate.id,
            from_date=from_date,
            allocated_hours=allocated,
            unallocated_hours=estimate.unallocated_hours,
            message=message
        )

    def recompute_from(self, state: PlannerState, from_date: Any) -> List[AllocationResult]:
        """Re-flow every estimate's auto hours from ``from_date`` forward in priority order"""
        from_date = parse_date(from_date)
        cleared = self._clear_auto_entries(state, from_date)
        logger.debug(f"Recomputing allocations from {from_date} ({cleared} auto entries cleared)")

        results = []
        for estimate in state.ordered_estimates():
            results.append(self.allocate(state, estimate.id, max(from_date, estimate.start_date)))
        return results

    def pin(self, state: PlannerState, estimate_id: str, day: Any, amount: float,
            clamp: bool = False) -> AllocationEntry:
        """
        Fix an estimate's hours on a date as a manual entry.

        Args:
            estimate_id: Estimate to pin
            day: Date of the entry
            amount: Hours to pin
            clamp: Clamp an amount above the date's capacity instead of raising
                CapacityExceededError

        Returns:
            The manual AllocationEntry
        """
        estimate = self._require_estimate(state, estimate_id)
        day = parse_date(day)
        amount = round_hours(amount)
        if amount < 0:
            raise NegativeAmountError(f"Pinned hours cannot be negative: {amount}")

        # Other estimates' manual hours are never displaced, auto hours are
        capacity = self.calendar.capacity_of(state, day)
        other_manual = sum(e.amount for e in state.entries_on(day)
                           if e.manual and e.estimate_id != estimate.id)
        available = round_hours(max(0.0, capacity - other_manual))
        if amount > available + EPSILON:
            if not clamp:
                raise CapacityExceededError(
                    f"Cannot pin {amount:.2f}h on {day}: only {available:.2f}h of capacity available"
                )
            logger.info(f"Clamping pin on {day} from {amount:.2f}h to {available:.2f}h")
            amount = available

        pinned_elsewhere = sum(e.amount for e in state.entries_for(estimate.id)
                               if e.manual and e.date != day)
        if pinned_elsewhere + amount > estimate.total_hours + EPSILON:
            raise OverAllocationError(
                f"Pinning {amount:.2f}h on {day} would put {pinned_elsewhere + amount:.2f}h of manual "
                f"hours on '{estimate.title}' (total {estimate.total_hours:.2f}h)"
            )

        self._write_entry(state, estimate.id, day, amount, manual=True)
        estimate.modified_at = datetime.now()
        logger.info(f"Pinned {amount:.2f}h of estimate {estimate.id} on {day}")

        self.recompute_from(state, day)
        return state.allocations[(estimate.id, day)]

    def unpin(self, state: PlannerState, estimate_id: str, day: Any) -> bool:
        """Turn a manual entry back into engine-managed hours; False if nothing was pinned"""
        estimate = self._require_estimate(state, estimate_id)
        day = parse_date(day)
        entry = state.allocations.get((estimate.id, day))
        if entry is None or not entry.manual:
            logger.debug(f"No manual entry for estimate {estimate.id} on {day}, nothing to unpin")
            return False

        entry.manual = False
        entry.revision = state.next_revision()
        entry.modified_at = datetime.now()
        estimate.modified_at = entry.modified_at

        self.recompute_from(state, day)
        return True

    def split(self, state: PlannerState, estimate_id: str, at_amount: float,
              today: Optional[date] = None, title: Optional[str] = None) -> Estimate:
        """
        Move ``at_amount`` hours of an estimate into a new child estimate.

        Only hours that are neither pinned nor already placed before the
        pivot date (today, or the parent's start if later) can be split off.
        """
        parent = self._require_estimate(state, estimate_id)
        at_amount = round_hours(at_amount)
        pivot = max(parse_date(today or date.today()), parent.start_date)

        locked = sum(e.amount for e in state.entries_for(parent.id) if e.manual or e.date < pivot)
        splittable = round_hours(parent.total_hours - locked)
        if not (EPSILON < at_amount < splittable - EPSILON):
            raise InvalidSplitAmountError(
                f"Split amount {at_amount:.2f}h must be between 0 and {splittable:.2f}h (exclusive)"
            )

        now = datetime.now()
        child = Estimate(
            id=state.next_id(state.estimates),
            title=title or f"{parent.title} (split)",
            total_hours=at_amount,
            start_date=pivot,
            seq=state.next_seq(),
            created_at=now,
            modified_at=now,
            parent_id=parent.id,
            version=parent.version,
            process=parent.process
        )
        state.estimates[child.id] = child
        parent.total_hours = round_hours(parent.total_hours - at_amount)
        parent.modified_at = now

        self.recompute_from(state, pivot)
        logger.info(f"Split {at_amount:.2f}h from estimate {parent.id} into {child.id}")
        return child

    def merge(self, state: PlannerState, parent_id: str, child_id: str) -> Estimate:
        """
        Fold a split child back into its parent.

        On a date where both have an entry, manual beats auto; between two
        manual entries the most recently written one wins; two auto entries
        are added together.
        """
        parent = self._require_estimate(state, parent_id)
        child = self._require_estimate(state, child_id)
        if child.id == parent.id or child.parent_id != parent.id:
            raise NotSiblingEstimatesError(f"Estimate {child.id} was not split from estimate {parent.id}")

        for entry in state.entries_for(child.id):
            del state.allocations[entry.key]
            existing = state.allocations.get((parent.id, entry.date))
            child_wins = (
                existing is None
                or (entry.manual and not existing.manual)
                or (entry.manual and existing.manual and entry.revision > existing.revision)
            )
            if child_wins:
                moved = AllocationEntry(
                    estimate_id=parent.id,
                    date=entry.date,
                    amount=entry.amount,
                    manual=entry.manual,
                    modified_at=entry.modified_at,
                    revision=entry.revision
                )
                state.allocations[moved.key] = moved
            elif not existing.manual and not entry.manual:
                existing.amount = round_hours(existing.amount + entry.amount)

        parent.total_hours = round_hours(parent.total_hours + child.total_hours)
        if child.remaining_hours is not None:
            parent.remaining_hours = round_hours((parent.remaining_hours or 0.0) + child.remaining_hours)

        for actual in state.actuals.values():
            if actual.estimate_id == child.id:
                actual.estimate_id = parent.id
        for grandchild in state.estimates.values():
            if grandchild.parent_id == child.id:
                grandchild.parent_id = parent.id

        del state.estimates[child.id]
        parent.modified_at = datetime.now()

        self.recompute_from(state, child.start_date)
        logger.info(f"Merged estimate {child.id} into {parent.id}")
        return parent

    # Read-only projections
    def allocation_grid_for(self, state: PlannerState, estimate_id: str) -> Dict[date, AllocationEntry]:
        estimate = self._require_estimate(state, estimate_id)
        return {entry.date: entry for entry in state.entries_for(estimate.id)}

    def allocated_hours(self, state: PlannerState, estimate_id: str) -> float:
        return round_hours(sum(e.amount for e in state.entries_for(str(estimate_id))))

    def allocated_on(self, state: PlannerState, day: Any) -> float:
        return round_hours(sum(e.amount for e in state.entries_on(parse_date(day))))

    def overcommitted_dates(self, state: PlannerState) -> Dict[date, float]:
        """Dates whose entries exceed capacity, e.g. pins kept after a vacation was added"""
        overcommitted = {}
        for day, used in self._usage_by_date(state).items():
            excess = round_hours(used - self.calendar.capacity_of(state, day))
            if excess > EPSILON:
                overcommitted[day] = excess
        return overcommitted

    def check_conservation(self, state: PlannerState) -> Dict[str, float]:
        """Estimates whose allocated plus unallocated hours differ from their total"""
        discrepancies = {}
        for estimate in state.ordered_estimates():
            accounted = self.allocated_hours(state, estimate.id) + estimate.unallocated_hours
            difference = round_hours(accounted - estimate.total_hours)
            if abs(difference) > EPSILON:
                discrepancies[estimate.id] = difference
        return discrepancies
