"""Payment lifecycle services: ledger access, reconciliation, Connect onboarding."""
