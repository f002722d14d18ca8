"""
Core module for engine configuration and utilities.

The CAT engine itself lives in ``adaptive_exam.core.cat``; it is not imported
at package level so that ``adaptive_exam.models`` can depend on
``adaptive_exam.core.datetime_utils`` without a cycle.
"""
from .config import settings

__all__ = ["settings"]
