"""
gentrace extras - Additional functionality beyond core modules.

This module contains heuristics that build on gentrace but are not part
of the core inference algorithms.
"""

from .ransac import (
    RANSACParams,
    fit_line,
    fit_line_with,
)

__all__ = [
    "RANSACParams",
    "fit_line",
    "fit_line_with",
]
