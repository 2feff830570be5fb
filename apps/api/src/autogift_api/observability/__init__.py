"""Tracing and scheduler metrics."""
