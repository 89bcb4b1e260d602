"""Shared helpers: errors, file access, credentials, persisted state."""
