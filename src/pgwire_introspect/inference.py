"""
Type Inference Orchestrator

probe -> EXPLAIN validation -> type catalog -> column comments -> column
attributes -> QueryTypes. Every step runs to completion on the channel before
the next one starts.
"""

from typing import Any, Sequence, Union

import structlog

from .catalog import get_attributes, get_comments, resolve_catalog
from .channel import BaseChannel
from .introspect import explain_query, get_type_data
from .models import ParamMetadata, ParseError, QueryTypes, ReturnType

logger = structlog.get_logger()


async def infer_query_types(query: str, mapping: Sequence[Any], channel: BaseChannel,
                            *, test_run: bool = True) -> Union[QueryTypes, ParseError]:
    """
    Infer parameter and result column types of `query`.

    Args:
        query: SQL text with PostgreSQL numeric placeholders
        mapping: Placeholder mapping of the caller, returned unchanged
        channel: Authenticated channel in idle state
        test_run: Validate the query with EXPLAIN EXECUTE before resolving types

    Returns:
        QueryTypes, or the ParseError reported by the server
    """
    type_data = await get_type_data(query, channel)
    if isinstance(type_data, ParseError):
        return type_data

    if test_run:
        test_run_result = await explain_query(query, type_data, channel)
        if isinstance(test_run_result, ParseError):
            return test_run_result

    params, fields = type_data.params, type_data.fields

    used_type_oids = list(params) + [f.type_oid for f in fields]
    type_map = await resolve_catalog(used_type_oids, channel)
    comment_rows = await get_comments(fields, channel)
    attributes = await get_attributes(fields, channel)

    comments = {c.key: c.comment for c in comment_rows}

    return_types = []
    for f in fields:
        attribute = attributes.get(f.key)
        return_types.append(ReturnType(
            return_name=f.name,
            type=type_map[f.type_oid],
            column_name=attribute.column_name if attribute else None,
            nullable=attribute.nullable if attribute else None,
            comment=comments.get(f.key) or None,
        ))

    param_metadata = ParamMetadata(
        params=[type_map[oid] for oid in params],
        mapping=mapping,
    )

    logger.debug("Inferred query types",
                 params=len(param_metadata.params),
                 columns=[r.return_name for r in return_types])
    return QueryTypes(param_metadata=param_metadata, return_types=return_types)
