"""BPM engine services — the only layer that writes to the database."""
