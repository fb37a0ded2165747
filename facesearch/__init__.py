"""Face video search service."""
