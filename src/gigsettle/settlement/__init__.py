"""Settlement subsystem — verification, the idempotent ledger, reconciliation."""
