"""Scoring, streak and achievement engine for fitness challenges."""

__version__ = "0.1.0"
