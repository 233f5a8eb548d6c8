"""Schema-agnostic duplicate detection and merging for CRM records."""

__version__ = "0.1.0"
