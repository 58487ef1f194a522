"""tenantctl - reconciliation controller for Tenant resources."""

__version__ = "0.1.0"
