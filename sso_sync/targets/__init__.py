"""Target identity store integrations."""
