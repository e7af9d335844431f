"""DuckDB persistence: event store and catalog tables."""
