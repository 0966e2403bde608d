"""Stock ledger: the only writer of product quantities."""
