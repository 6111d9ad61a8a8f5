"""Database layer: declarative base and engine/session helpers."""
