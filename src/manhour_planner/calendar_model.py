"""
Calendar and Capacity Model

Computes the hours available on a date from the base daily capacity,
weekends, company holidays and capacity blocks (vacation, other work).
Nothing here is cached; every answer is derived from the state passed in.
"""

from datetime import date, timedelta
from typing import List

from .data_manager import PlannerState, CapacityBlock, round_hours

WEEKEND_DAYS = (5, 6)  # Saturday, Sunday


class CalendarModel:
    """Pure capacity calculations over a planner state"""

    @staticmethod
    def is_weekend(day: date) -> bool:
        return day.weekday() in WEEKEND_DAYS

    def is_company_holiday(self, state: PlannerState, day: date) -> bool:
        return any(h.covers(day) for h in state.company_holidays.values())

    def base_capacity_of(self, state: PlannerState, day: date) -> float:
        """Capacity before vacation and other-work blocks are subtracted"""
        if self.is_weekend(day) or self.is_company_holiday(state, day):
            return 0.0
        return state.settings.base_capacity_hours

    def blocks_on(self, state: PlannerState, day: date) -> List[CapacityBlock]:
        return [b for b in state.capacity_blocks.values() if b.date == day]

    def capacity_of(self, state: PlannerState, day: date) -> float:
        """Available work hours on a date, floored at 0"""
        blocked = sum(b.amount for b in self.blocks_on(state, day))
        return round_hours(max(0.0, self.base_capacity_of(state, day) - blocked))

    def is_working_day(self, state: PlannerState, day: date) -> bool:
        return self.capacity_of(state, day) > 0

    def working_days(self, state: PlannerState, start: date, end: date) -> List[date]:
        """Dates in the inclusive range that have any capacity"""
        days = []
        current = start
        while current <= end:
            if self.is_working_day(state, current):
                days.append(current)
            current += timedelta(days=1)
        return days

    def total_capacity(self, state: PlannerState, start: date, end: date) -> float:
        total = 0.0
        current = start
        while current <= end:
            total += self.capacity_of(state, current)
            current += timedelta(days=1)
        return round_hours(total)
