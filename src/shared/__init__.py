"""Shared constants, errors and settings."""
