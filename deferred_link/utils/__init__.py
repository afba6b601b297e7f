"""Utility modules for deferred_link."""
