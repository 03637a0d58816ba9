"""skillquery: JSON-first CLI wrappers for observability and analytics APIs."""

__version__ = "0.1.0"
