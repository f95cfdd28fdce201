"""
Error Types for the Man-hour Planner

Every mutation error derives from PlannerError so the state manager can roll
back and re-raise a single family of exceptions.
"""


class PlannerError(Exception):
    """Base exception for planner operations"""
    pass


class InvalidSplitAmountError(PlannerError):
    """Raised when a split amount is not strictly inside the splittable range"""
    pass


class NotSiblingEstimatesError(PlannerError):
    """Raised when merging a child into an estimate that is not its parent"""
    pass


class HasDependentSplitsError(PlannerError):
    """Raised when deleting an estimate that still has split children"""
    pass


class CapacityExceededError(PlannerError):
    """Raised when a pinned amount is beyond the date's capacity"""
    pass


class NegativeAmountError(PlannerError):
    """Raised when an hour amount is negative"""
    pass


class UnknownEstimateIdError(PlannerError):
    """Raised when an estimate id does not exist"""
    pass


class UnknownRecordError(PlannerError):
    """Raised when a capacity block, holiday or actual id does not exist"""
    pass


class OverAllocationError(PlannerError):
    """Raised when pinned hours would exceed the estimate's total"""
    pass


class PersistenceWriteFailedError(PlannerError):
    """Raised when saving the planner document fails"""
    pass


class DataFileCorruptedError(PlannerError):
    """Raised when the data file is corrupted and no backup can be used"""
    pass
