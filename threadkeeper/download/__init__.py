"""Download engine, scheduling and the command surface."""
