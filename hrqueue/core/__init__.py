"""Application startup and shutdown."""
