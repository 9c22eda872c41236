"""Synthetic sources for exercising snapshot runs."""
