"""SQLAlchemy persistence for the ledger, registries and cached prices."""
