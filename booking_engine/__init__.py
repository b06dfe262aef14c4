"""Multi-tenant appointment booking engine."""

__version__ = "0.1.0"
