"""Waste collection dispatch and pricing core."""

__version__ = "0.1.0"
