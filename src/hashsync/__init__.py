"""Hash-based change detection, propagation and delivery."""

__version__ = "0.1.0"
