"""State/store layer.

This package is the single source of truth for a tracked job's route,
bounded route history, live position and session state.
"""
