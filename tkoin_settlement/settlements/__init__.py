"""Platform settlement records and notification delivery."""
