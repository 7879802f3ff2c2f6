"""Demand forecasting and validation engine for municipal health-office data."""

__version__ = "0.1.0"
