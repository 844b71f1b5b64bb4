"""Boda dispatch backend — rider matching and order lifecycle."""

__version__ = "2.0.0"
