"""
Actual Tracker for the Man-hour Planner

Records the effort actually spent on each estimate. Actuals are never
checked against capacity or allocation: going over the estimate is what the
reports are there to show.
"""

from datetime import date, datetime
from typing import List, Optional, Any
import logging

from .data_manager import PlannerState, ActualEntry, round_hours, parse_date
from .errors import NegativeAmountError, UnknownEstimateIdError, UnknownRecordError

logger = logging.getLogger(__name__)


class ActualTracker:
    """Append and update actual effort entries"""

    def record(self, state: PlannerState, estimate_id: str, day: Any, amount: float,
               note: str = "") -> ActualEntry:
        if str(estimate_id) not in state.estimates:
            raise UnknownEstimateIdError(f"Unknown estimate id: {estimate_id}")
        amount = round_hours(amount)
        if amount < 0:
            raise NegativeAmountError(f"Actual hours cannot be negative: {amount}")

        actual = ActualEntry(
            id=state.next_id(state.actuals),
            estimate_id=str(estimate_id),
            date=parse_date(day),
            amount=amount,
            note=note,
            created_at=datetime.now()
        )
        state.actuals[actual.id] = actual
        logger.info(f"Recorded {amount:.2f}h actual for estimate {estimate_id} on {actual.date}")
        return actual

    def update(self, state: PlannerState, actual_id: str, amount: Optional[float] = None,
               day: Optional[Any] = None, note: Optional[str] = None) -> ActualEntry:
        actual = state.actuals.get(str(actual_id))
        if actual is None:
            raise UnknownRecordError(f"Unknown actual id: {actual_id}")

        if amount is not None:
            amount = round_hours(amount)
            if amount < 0:
                raise NegativeAmountError(f"Actual hours cannot be negative: {amount}")
            actual.amount = amount
        if day is not None:
            actual.date = parse_date(day)
        if note is not None:
            actual.note = note
        return actual

    def actuals_for(self, state: PlannerState, estimate_id: str) -> List[ActualEntry]:
        if str(estimate_id) not in state.estimates:
            raise UnknownEstimateIdError(f"Unknown estimate id: {estimate_id}")
        entries = [a for a in state.actuals.values() if a.estimate_id == str(estimate_id)]
        return sorted(entries, key=lambda a: (a.date, a.created_at))

    def total_for(self, state: PlannerState, estimate_id: str) -> float:
        return round_hours(sum(a.amount for a in state.actuals.values() if a.estimate_id == str(estimate_id)))

    def actuals_on(self, state: PlannerState, day: date) -> List[ActualEntry]:
        day = parse_date(day)
        return [a for a in state.actuals.values() if a.date == day]
