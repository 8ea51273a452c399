"""Metric storage and scheduling."""
