"""Core infrastructure: configuration, logging, storage and database seams."""
