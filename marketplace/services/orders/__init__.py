"""Order intake, status state machine and persistence."""
