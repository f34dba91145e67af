"""Core models, errors and shared helpers."""
