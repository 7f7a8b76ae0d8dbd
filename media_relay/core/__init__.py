"""Core configuration, logging, errors and hashing."""
