"""Batch entry points for the attendance timeline engine."""
