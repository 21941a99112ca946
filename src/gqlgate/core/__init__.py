"""
Core module - errors, settings, request normalization.
"""

from __future__ import annotations

from .config import GraphQLSettings
from .context import RequestContext
from .errors import (
    ConfigurationError,
    ExecutionError,
    GQLGateError,
    MalformedRequestError,
    SchemaLoadError,
    TransportError,
    UploadLimitError,
)
from .request_parser import (
    NormalizedOperation,
    get_graphql_parameters,
    normalize_request,
)
from .schema import SchemaProvider, StaticSchemaProvider
from .utils import dump_json, dump_json_bytes, parse_size_limit

__all__ = [
    # Settings
    "GraphQLSettings",
    # Context
    "RequestContext",
    # Errors
    "GQLGateError",
    "ConfigurationError",
    "SchemaLoadError",
    "MalformedRequestError",
    "UploadLimitError",
    "ExecutionError",
    "TransportError",
    # Request parser
    "NormalizedOperation",
    "get_graphql_parameters",
    "normalize_request",
    # Schema
    "SchemaProvider",
    "StaticSchemaProvider",
    # Utils
    "parse_size_limit",
    "dump_json",
    "dump_json_bytes",
]
