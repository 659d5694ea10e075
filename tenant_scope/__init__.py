"""Per-operation tenant context for pooled PostgreSQL connections."""

__version__ = "0.1.0"
