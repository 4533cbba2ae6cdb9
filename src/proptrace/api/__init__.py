"""HTTP API for trace submission, status polling and wallet queries."""
