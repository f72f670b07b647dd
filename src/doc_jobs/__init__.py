"""
Document job service package.

This module provides a FastAPI application that accepts long-running document
conversions, runs them on an in-process worker pool and serves the resulting
artifacts until they expire.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
