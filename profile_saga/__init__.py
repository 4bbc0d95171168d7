"""Profile lifecycle service."""
