"""Rule conflict resolution and evaluation optimizer for email business rules."""

__version__ = "0.1.0"
