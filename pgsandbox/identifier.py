"""Quoting of PostgreSQL identifiers."""

from __future__ import annotations


def quote_identifier(identifier: str) -> str:
    """Double-quote an identifier, doubling any embedded double quotes."""
    return '"' + identifier.replace('"', '""') + '"'


def quote_qualified_name(schema: str, table: str) -> str:
    """Quote a ``schema.table`` name."""
    return quote_identifier(schema) + "." + quote_identifier(table)