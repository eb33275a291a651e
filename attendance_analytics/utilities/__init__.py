"""Shared helpers: logging, configuration and the school calendar."""
