"""Bridges REDCap Data Entry Triggers to Management Portal subjects."""

__version__ = "0.1.0"
