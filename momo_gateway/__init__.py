"""Multi-tenant mobile-money disbursement gateway core."""

__version__ = "0.1.0"
