"""
Ingest Module

Reading raw "current state" rows and normalizing them to one row per
natural key before change detection.
"""
