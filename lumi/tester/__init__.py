"""Cross-platform UI test automation engine."""

__version__ = "0.4.0"
