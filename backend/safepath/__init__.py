"""SafePath routing backend."""
