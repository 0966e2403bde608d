"""Domain services for catalog reads, stock, orders, payments, settlement and notifications."""
