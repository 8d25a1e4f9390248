"""Application services that load ledger state, run the domain engines and persist results."""
