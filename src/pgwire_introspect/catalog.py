"""
System catalog resolution

Maps type OIDs to MappableTypes (pg_type / pg_enum) and table columns to
their names, nullability (pg_attribute) and comments (pg_description).
Columns are correlated through ColumnKey (table OID, attribute number).
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

import structlog

from .channel import BaseChannel
from .errors import CatalogIntegrityError
from .models import (
    ArrayType,
    ColumnAttribute,
    ColumnComment,
    ColumnKey,
    EnumType,
    MappableType,
    ScalarType,
    TypeField,
    TypeRow,
)
from .query import run_query

logger = structlog.get_logger()

TYPES_CATALOG_QUERY = """
SELECT pt.oid, pt.typname, pt.typtype, pe.enumlabel, pt.typelem, pt.typcategory
FROM pg_type pt
LEFT JOIN pg_enum pe ON pt.oid = pe.enumtypid
WHERE pt.oid IN ({oids})
OR pt.oid IN (SELECT typelem FROM pg_type ptn WHERE ptn.oid IN ({oids}))
ORDER BY pt.oid, pe.enumsortorder;
"""


def _optional_int(value) -> int:
    return int(value) if value not in (None, '') else 0


async def run_types_catalog_query(type_oids: Iterable[int], channel: BaseChannel) -> List[TypeRow]:
    oids = sorted(set(type_oids))
    if not oids:
        return []

    concatenated_oids = ','.join(str(int(oid)) for oid in oids)
    rows = await run_query(TYPES_CATALOG_QUERY.format(oids=concatenated_oids), channel)

    return [
        TypeRow(
            oid=int(oid),
            type_name=type_name,
            type_kind=type_kind,
            enum_label=enum_label,
            element_type_oid=_optional_int(element_type_oid),
            type_category=type_category,
        )
        for oid, type_name, type_kind, enum_label, element_type_oid, type_category in rows
    ]


@dataclass
class _EnumBuilder:
    name: str
    labels: List[str] = field(default_factory=list)

    def build(self) -> EnumType:
        return EnumType(name=self.name, enum_values=tuple(self.labels))


def reduce_type_rows(type_rows: Sequence[TypeRow]) -> Dict[int, MappableType]:
    """
    Aggregate catalog rows into one MappableType per OID.

    Enum types arrive as one row per label; labels keep the row order.
    Arrays whose element type is an enum wrap that enum, every other row
    becomes a scalar named after pg_type.typname.

    Raises:
        CatalogIntegrityError: Two non-enum rows share an OID
    """
    builders: Dict[int, _EnumBuilder] = {}
    for row in type_rows:
        if not row.is_enum:
            continue
        builder = builders.setdefault(row.oid, _EnumBuilder(row.type_name))
        # an enum without labels still produces one row with a NULL label
        if row.enum_label is not None:
            builder.labels.append(row.enum_label)

    enum_types = {oid: builder.build() for oid, builder in builders.items()}

    type_map: Dict[int, MappableType] = {}
    for row in type_rows:
        if row.oid in enum_types:
            type_map[row.oid] = enum_types[row.oid]
            continue

        if row.oid in type_map:
            raise CatalogIntegrityError(
                f"Duplicate catalog rows for non-enum type {row.type_name} (oid {row.oid})"
            )

        if row.is_array and row.element_type_oid in enum_types:
            type_map[row.oid] = ArrayType(name=row.type_name, element_type=enum_types[row.element_type_oid])
        else:
            type_map[row.oid] = ScalarType(name=row.type_name)

    return type_map


async def resolve_catalog(type_oids: Iterable[int], channel: BaseChannel) -> Dict[int, MappableType]:
    type_rows = await run_types_catalog_query(type_oids, channel)
    type_map = reduce_type_rows(type_rows)
    logger.debug("Resolved types", oids=sorted(type_map))
    return type_map


def _column_keys(fields: Iterable[TypeField]) -> List[ColumnKey]:
    keys = []
    for f in fields:
        if f.is_table_column and f.key not in keys:
            keys.append(f.key)
    return keys


async def get_comments(fields: Sequence[TypeField], channel: BaseChannel) -> List[ColumnComment]:
    keys = _column_keys(fields)
    if not keys:
        return []

    selection = ' or '.join(
        f"(objoid={key.table_oid} and objsubid={key.column_attr_number})" for key in keys
    )
    description_rows = await run_query(
        f"""SELECT
      objoid, objsubid, description
     FROM pg_description WHERE {selection};""",
        channel,
    )

    return [
        ColumnComment(table_oid=int(objoid), column_attr_number=int(objsubid), comment=description)
        for objoid, objsubid, description in description_rows
    ]


async def get_attributes(fields: Sequence[TypeField],
                         channel: BaseChannel) -> Dict[ColumnKey, ColumnAttribute]:
    """Column names and nullability of the table columns among `fields`"""
    keys = _column_keys(fields)
    if not keys:
        return {}

    selection = ' or '.join(
        f"(attrelid = {key.table_oid} and attnum = {key.column_attr_number})" for key in keys
    )
    attribute_rows = await run_query(
        f"""SELECT
      attrelid, attnum, attname, attnotnull
     FROM pg_attribute WHERE {selection};""",
        channel,
    )

    return {
        ColumnKey(int(attrelid), int(attnum)): ColumnAttribute(
            column_name=attname,
            nullable=attnotnull != 't',
        )
        for attrelid, attnum, attname, attnotnull in attribute_rows
    }
