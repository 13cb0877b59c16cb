"""Background embedding synchronization."""
