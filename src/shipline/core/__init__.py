"""Core primitives: errors, logging, settings, hashing."""
