"""
Warehouse Module

Change detection against the historized table, the stores that hold it, and
the writer that opens and closes validity intervals (SCD Type 2).
"""
