"""
Note Memory for NoteVault

This module provides:
- Confidence and recency: per-type decay and baselines
- Feedback: explicit boost/penalise of stored confidence
- Pins: notes surfaced regardless of ranking
- Budget: context injection tracking and utilisation reports

Usage:
    from memory import FeedbackAdjuster, PinManager

    FeedbackAdjuster(repo).boost_up("decisions/*")
    PinManager(repo).pin("projects/roadmap.md")
"""

from .feedback import FeedbackAdjuster, FeedbackChange
from .pins import PinManager
from .budget import BudgetReport, NoUsageData, ReportKind, get_budget_report

__all__ = [
    'FeedbackAdjuster',
    'FeedbackChange',
    'PinManager',
    'BudgetReport',
    'NoUsageData',
    'ReportKind',
    'get_budget_report',
]
