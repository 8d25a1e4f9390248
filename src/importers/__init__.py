"""Importers that load ledger rows and registries from external files."""

from importers.ledger_csv import load_ledger_csv

__all__ = ["load_ledger_csv"]
