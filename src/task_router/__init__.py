"""Task router: admission control and dispatch across execution backends."""

__version__ = "0.1.0"
