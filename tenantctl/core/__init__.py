"""Core infrastructure shared by all tenantctl components."""
