"""Secrets module - named credential resolution for pipeline actions."""
