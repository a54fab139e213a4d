"""Scope hierarchy: enterprise, local, project and global storage roots."""
