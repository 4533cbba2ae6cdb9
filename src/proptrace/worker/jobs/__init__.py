"""Job entrypoints executed outside the API process."""
