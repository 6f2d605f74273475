"""Voice-driven data entry for estimating lines."""

__version__ = "0.1.0"
