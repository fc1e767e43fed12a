"""Perpetual-futures decision engine: composite signals, gates, risk and execution."""

__version__ = "0.1.0"
