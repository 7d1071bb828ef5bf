"""Background operations: stall sweep, statistics and aggregation scheduling."""
