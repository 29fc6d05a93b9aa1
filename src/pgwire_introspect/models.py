"""
Type Introspection Data Model

Plain data containers produced by the introspection pipeline. Everything
here is created fresh for a single query and discarded afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union


class TypeCategory(str, Enum):
    """pg_type.typcategory codes"""

    ARRAY = 'A'
    BOOLEAN = 'B'
    COMPOSITE = 'C'
    DATE_TIME = 'D'
    ENUM = 'E'
    GEOMETRIC = 'G'
    NETWORK_ADDRESS = 'I'
    NUMERIC = 'N'
    PSEUDO = 'P'
    STRING = 'S'
    TIMESPAN = 'T'
    USERDEFINED = 'U'
    BITSTRING = 'V'
    UNKNOWN = 'X'


class DatabaseTypeKind(str, Enum):
    """pg_type.typtype codes"""

    BASE = 'b'
    COMPOSITE = 'c'
    DOMAIN = 'd'
    ENUM = 'e'
    PSEUDO = 'p'
    RANGE = 'r'
    MULTIRANGE = 'm'


@dataclass(frozen=True)
class ParseError:
    """Server-reported error for a query, returned as data"""

    error_code: str
    message: str
    hint: Optional[str] = None
    position: Optional[str] = None

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> 'ParseError':
        # R (routine) is the historical error code; C (SQLSTATE) when absent
        return cls(
            error_code=fields.get('R') or fields.get('C', ''),
            message=fields.get('M', ''),
            hint=fields.get('H'),
            position=fields.get('P'),
        )


@dataclass(frozen=True)
class TypeField:
    """One RowDescription entry"""

    name: str
    table_oid: int
    column_attr_number: int
    type_oid: int
    type_size: int
    type_modifier: int
    format_code: int

    @property
    def is_table_column(self) -> bool:
        return self.column_attr_number > 0

    @property
    def key(self) -> 'ColumnKey':
        return ColumnKey(self.table_oid, self.column_attr_number)


@dataclass
class TypeData:
    params: List[int] = field(default_factory=list)
    fields: List[TypeField] = field(default_factory=list)


RawTypeData = Union[TypeData, ParseError]


@dataclass(frozen=True)
class TypeRow:
    """One row of the pg_type / pg_enum catalog query"""

    oid: int
    type_name: str
    type_kind: str
    enum_label: Optional[str]
    type_category: Optional[str] = None
    element_type_oid: Optional[int] = None

    @property
    def is_enum(self) -> bool:
        return self.type_kind == DatabaseTypeKind.ENUM

    @property
    def is_array(self) -> bool:
        return self.type_category == TypeCategory.ARRAY


@dataclass(frozen=True)
class ScalarType:
    name: str


@dataclass(frozen=True)
class EnumType:
    name: str
    enum_values: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ArrayType:
    name: str
    element_type: 'MappableType'


MappableType = Union[ScalarType, EnumType, ArrayType]


class ColumnKey(NamedTuple):
    """Join key correlating fields, attributes and comments"""

    table_oid: int
    column_attr_number: int


@dataclass(frozen=True)
class ColumnComment:
    table_oid: int
    column_attr_number: int
    comment: str

    @property
    def key(self) -> ColumnKey:
        return ColumnKey(self.table_oid, self.column_attr_number)


@dataclass(frozen=True)
class ColumnAttribute:
    column_name: str
    nullable: bool


@dataclass
class ParamMetadata:
    params: List[MappableType]
    # placeholder mapping supplied by the caller, never inspected
    mapping: Sequence[Any]


@dataclass
class ReturnType:
    return_name: str
    type: MappableType
    column_name: Optional[str] = None
    nullable: Optional[bool] = None
    comment: Optional[str] = None


@dataclass
class QueryTypes:
    param_metadata: ParamMetadata
    return_types: List[ReturnType]
