"""Source directory integrations."""
