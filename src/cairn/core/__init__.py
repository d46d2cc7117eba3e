"""Core infrastructure: canonical hashing, configuration, logging, events and storage."""
