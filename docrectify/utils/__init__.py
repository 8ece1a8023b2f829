"""Shared utilities: exception taxonomy, image output and debug visualizations."""
