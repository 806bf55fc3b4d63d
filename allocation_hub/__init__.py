"""Allocation Hub: transaction reconciliation and allocation workflow service."""

__version__ = "0.1.0"
