"""Process configuration (environment and settings)."""
