"""Feed aggregation, pagination and live sync."""
