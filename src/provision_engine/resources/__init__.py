"""Process-wide resource allocators."""
