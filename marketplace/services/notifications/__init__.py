"""Best-effort buyer and seller notifications."""
