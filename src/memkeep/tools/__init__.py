"""Tool-facing entry points that never raise."""
