"""Margin risk control loop for leveraged-trading ledgers."""

__version__ = "0.1.0"
