"""Similarity search, duplicate detection and the embedding cache."""
