"""Row description fields and wire-value conversion."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

INT8OID = 20
INT4OID = 23


@dataclass(frozen=True)
class FieldDescription:
    """One column of a RowDescription message."""

    name: bytes
    table_oid: int = 0
    table_attribute_number: int = 0
    data_type_oid: int = 0
    data_type_size: int = -1
    type_modifier: int = -1
    format: int = 0


def convert_field_descriptions(field_descs: Iterable[Any]) -> list[FieldDescription]:
    """Build wire field descriptions from objects with the same attribute names."""
    result = []
    for desc in field_descs:
        name = desc.name
        result.append(
            FieldDescription(
                name=name.encode("utf-8") if isinstance(name, str) else bytes(name),
                table_oid=desc.table_oid,
                table_attribute_number=desc.table_attribute_number,
                data_type_oid=desc.data_type_oid,
                data_type_size=desc.data_type_size,
                type_modifier=desc.type_modifier,
                format=desc.format,
            )
        )
    return result


def data_type_size_for_oid(oid: int) -> int:
    """Typical size of a type: 8 for bigint, 4 for integer, -1 otherwise."""
    if oid == INT8OID:
        return 8
    if oid == INT4OID:
        return 4
    return -1


def field_descriptions_from_names_and_oids(
    names: Sequence[str], oids: Sequence[int]
) -> list[FieldDescription]:
    """Text-format fields for parallel names and OIDs; empty if they do not match."""
    if not names or len(names) != len(oids):
        return []
    return [
        FieldDescription(
            name=name.encode("utf-8"),
            data_type_oid=oid,
            data_type_size=data_type_size_for_oid(oid),
            type_modifier=-1,
        )
        for name, oid in zip(names, oids)
    ]


def raw_value_to_text(oid: int, raw: Optional[bytes]) -> Optional[bytes]:
    """Turn a binary integer value into its text form; other values pass through."""
    if raw is None:
        return None
    if (oid == INT8OID and len(raw) == 8) or (oid == INT4OID and len(raw) == 4):
        return str(int.from_bytes(raw, "big", signed=True)).encode("ascii")
    return raw