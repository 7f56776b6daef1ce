"""Packaged data files (service configuration templates)."""
