"""Shared kernel - domain base types and infrastructure services."""
