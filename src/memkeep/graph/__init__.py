"""Relationship graph over memory ids."""
