"""Voice relay service."""
