"""Card Sync: Scrydex catalog and pricing sync into Postgres."""

__version__ = "0.1.0"
