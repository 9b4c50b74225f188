"""Layer merging and archive writing."""
