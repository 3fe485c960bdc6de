"""PostgREST-backed persistence."""
