"""Console rendering."""
