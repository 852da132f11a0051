"""Booknook - personal e-book library with cloud sync."""

__version__ = "0.3.0"
