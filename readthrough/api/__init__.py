"""HTTP integration: middleware and cache administration routes."""
