"""
Man-hour Planner

Spreads estimated task effort over a working calendar, keeps user-pinned
hours in place, and compares the plan with the actual effort recorded.
"""

__version__ = "1.0.0"
__author__ = "Man-hour Planner Team"
