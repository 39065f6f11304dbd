"""Building blocks for a PostgreSQL test sandbox: statement parsing, savepoint session state and helpers."""

__version__ = "0.1.0"