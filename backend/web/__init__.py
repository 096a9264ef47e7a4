"""FastAPI adapter for the shuttle identity service."""
