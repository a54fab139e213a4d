"""Filter-then-apply operations over many memories at once."""
