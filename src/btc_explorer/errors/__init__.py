"""Error types shared across the explorer."""
