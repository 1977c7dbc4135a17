"""Small shared helpers: JSON, logging, roles, timestamps, hashing."""
