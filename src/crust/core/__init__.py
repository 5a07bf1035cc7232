"""Domain models, errors and aggregation math."""
