"""Agent ledger: balances, locks and the audit trail."""
