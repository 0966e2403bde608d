"""Per-seller settlement over multi-seller orders."""
