"""
Core modules for lease costs.

This package contains the pure domain logic: billing windows, cents
arithmetic, retry classification, schemas, the trigger lifecycle, cost
aggregation, scheduling, orphan reaping and the collection orchestrator.
"""
