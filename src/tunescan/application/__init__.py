"""Application layer - job queue, workers and scan services."""
