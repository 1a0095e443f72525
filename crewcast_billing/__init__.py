"""Stripe billing webhook ingestion and entitlement reconciliation for Crewcast."""

__version__ = "1.0.0"
