"""Core module - shared models, stores and utilities."""
