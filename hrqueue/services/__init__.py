"""Service layer: event bus and notification dispatch."""
