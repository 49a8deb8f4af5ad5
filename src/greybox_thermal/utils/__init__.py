"""Configuration and data utilities."""
