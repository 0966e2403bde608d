"""Read-only view of catalog products at order time."""
