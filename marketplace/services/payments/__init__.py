"""Payment routing, gateway client and payment reconciliation."""
