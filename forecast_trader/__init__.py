"""Forecast-driven trading agent with bracket-protected execution."""

__version__ = "0.1.0"
