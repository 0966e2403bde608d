"""Multi-seller marketplace order lifecycle and payment reconciliation service."""

__version__ = "1.0.0"
