"""Adaptive SQM bandwidth controller for WAN links."""

__version__ = "1.0.0"
