"""Point ledger and settlement engine."""
