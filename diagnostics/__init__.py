"""Operator tooling for inspecting and repairing the queue."""
