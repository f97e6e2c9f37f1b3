"""HTTP boundary - FastAPI application."""
