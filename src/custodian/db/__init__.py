"""Database layer: engine/session configuration, models and repositories."""
