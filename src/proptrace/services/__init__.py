"""Service layer: trace lifecycle, bulk jobs, deduplication and billing."""
