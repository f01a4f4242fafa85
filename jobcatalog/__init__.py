"""Job catalog sync and saved-search alerts."""

__version__ = "0.1.0"
