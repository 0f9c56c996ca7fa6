"""Core primitives: clock, errors, logging, settings, storage and models."""
