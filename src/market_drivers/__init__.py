"""Session-aware market driver detection and bias scoring."""

__version__ = "1.0.0"
