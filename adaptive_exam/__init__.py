"""
Adaptive exam engine: 3PL IRT computerized adaptive testing, exam assembly
and item calibration.
"""

__version__ = "0.1.0"
