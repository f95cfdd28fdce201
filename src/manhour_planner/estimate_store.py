"""
Estimate Store for the Man-hour Planner

CRUD over estimate records. Every change that moves hours hands off to the
allocation engine so allocations stay consistent with the estimate totals.
"""

from datetime import datetime
from typing import List, Optional, Any
import logging

from .allocation_engine import AllocationEngine
from .data_manager import PlannerState, Estimate, EPSILON, round_hours, parse_date
from .errors import (
    HasDependentSplitsError, NegativeAmountError, OverAllocationError, UnknownEstimateIdError
)

logger = logging.getLogger(__name__)


class EstimateStore:
    """Create, edit and delete estimates"""

    def __init__(self, engine: Optional[AllocationEngine] = None):
        self.engine = engine or AllocationEngine()

    def get(self, state: PlannerState, estimate_id: str) -> Estimate:
        estimate = state.estimates.get(str(estimate_id))
        if estimate is None:
            raise UnknownEstimateIdError(f"Unknown estimate id: {estimate_id}")
        return estimate

    def get_estimates(self, state: PlannerState) -> List[Estimate]:
        return state.ordered_estimates()

    def children_of(self, state: PlannerState, estimate_id: str) -> List[Estimate]:
        return [e for e in state.ordered_estimates() if e.parent_id == str(estimate_id)]

    def create(self, state: PlannerState, title: str, total_hours: float,
               start_date: Optional[Any] = None, version: str = "", process: str = "",
               parent_id: Optional[str] = None) -> Estimate:
        """Add an estimate and allocate it from its start date"""
        total_hours = round_hours(total_hours)
        if total_hours < 0:
            raise NegativeAmountError(f"Estimated hours cannot be negative: {total_hours}")
        if parent_id is not None:
            self.get(state, parent_id)

        now = datetime.now()
        estimate = Estimate(
            id=state.next_id(state.estimates),
            title=title,
            total_hours=total_hours,
            start_date=parse_date(start_date) if start_date is not None else now.date(),
            seq=state.next_seq(),
            created_at=now,
            modified_at=now,
            parent_id=str(parent_id) if parent_id is not None else None,
            version=version,
            process=process
        )
        state.estimates[estimate.id] = estimate
        logger.info(f"Created estimate {estimate.id} '{title}' ({total_hours:.2f}h from {estimate.start_date})")

        # Newest estimate has the lowest priority, so it only takes what is left
        self.engine.allocate(state, estimate.id, estimate.start_date)
        return estimate

    def update(self, state: PlannerState, estimate_id: str, title: Optional[str] = None,
               total_hours: Optional[float] = None, start_date: Optional[Any] = None,
               version: Optional[str] = None, process: Optional[str] = None) -> Estimate:
        """Edit an estimate; total or start date changes re-flow its allocation"""
        estimate = self.get(state, estimate_id)
        old_start = estimate.start_date
        needs_recompute = False

        if title is not None:
            estimate.title = title
        if version is not None:
            estimate.version = version
        if process is not None:
            estimate.process = process

        if total_hours is not None:
            total_hours = round_hours(total_hours)
            if total_hours < 0:
                raise NegativeAmountError(f"Estimated hours cannot be negative: {total_hours}")
            pinned = sum(e.amount for e in state.entries_for(estimate.id) if e.manual)
            if total_hours + EPSILON < pinned:
                raise OverAllocationError(
                    f"Total {total_hours:.2f}h is below the {pinned:.2f}h already pinned on '{estimate.title}'"
                )
            needs_recompute = needs_recompute or abs(total_hours - estimate.total_hours) > EPSILON
            estimate.total_hours = total_hours

        if start_date is not None:
            new_start = parse_date(start_date)
            needs_recompute = needs_recompute or new_start != old_start
            estimate.start_date = new_start

        estimate.modified_at = datetime.now()
        if needs_recompute:
            self.engine.recompute_from(state, min(old_start, estimate.start_date))
        return estimate

    def delete(self, state: PlannerState, estimate_id: str, force: bool = False) -> List[str]:
        """
        Delete an estimate with its allocations and actuals.

        Args:
            estimate_id: Estimate to delete
            force: Also delete split children (recursively) instead of raising
                HasDependentSplitsError

        Returns:
            Ids of every deleted estimate
        """
        estimate = self.get(state, estimate_id)
        children = self.children_of(state, estimate.id)
        if children and not force:
            raise HasDependentSplitsError(
                f"Estimate {estimate.id} has split children: {', '.join(c.id for c in children)}"
            )

        deleted = []
        for child in children:
            deleted.extend(self._delete_cascade(state, child.id))
        deleted.extend(self._delete_cascade(state, estimate.id))

        # Freed capacity goes to the estimates that come after it
        self.engine.recompute_from(state, estimate.start_date)
        logger.info(f"Deleted estimates: {', '.join(deleted)}")
        return deleted

    def _delete_cascade(self, state: PlannerState, estimate_id: str) -> List[str]:
        deleted = []
        for child in self.children_of(state, estimate_id):
            deleted.extend(self._delete_cascade(state, child.id))

        for key in [k for k, entry in state.allocations.items() if entry.estimate_id == estimate_id]:
            del state.allocations[key]
        for actual_id in [a.id for a in state.actuals.values() if a.estimate_id == estimate_id]:
            del state.actuals[actual_id]
        del state.estimates[estimate_id]
        deleted.append(estimate_id)
        return deleted

    def set_remaining(self, state: PlannerState, estimate_id: str, hours: Optional[float]) -> Estimate:
        """Record the expected remaining effort; None clears it"""
        estimate = self.get(state, estimate_id)
        if hours is not None:
            hours = round_hours(hours)
            if hours < 0:
                raise NegativeAmountError(f"Remaining hours cannot be negative: {hours}")
        estimate.remaining_hours = hours
        estimate.modified_at = datetime.now()
        return estimate

    def estimates_in_range(self, state: PlannerState, start: Any, end: Any) -> List[Estimate]:
        """Estimates with allocated hours or a start date in the inclusive date range"""
        start, end = parse_date(start), parse_date(end)
        in_range = {e.estimate_id for e in state.allocations.values() if start <= e.date <= end}
        return [e for e in state.ordered_estimates()
                if e.id in in_range or start <= e.start_date <= end]
