"""
Request normalizer for GraphQL over HTTP.

Extracts {operation_name, query, variables} from a request regardless of
how the operation was sent:

1. GET query string:
   /graphql?query={version}&variables={"id":1}&operationName=Q

2. JSON body (POST, application/json):
   {"query": "...", "variables": {...}, "operationName": "..."}

3. Raw query body (POST, application/graphql):
   { version }

4. GraphQL multipart request (POST, multipart/form-data):
   operations={"query": "...", "variables": {"file": null}}
   map={"0": ["variables.file"]}
   0=<file>
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from starlette.datastructures import Headers, UploadFile
from starlette.formparsers import MultiPartException, MultiPartParser
from starlette.requests import Request

from .errors import MalformedRequestError, UploadLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedOperation:
    """Operation parameters extracted from a request."""
    query: str
    operation_name: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)


def get_graphql_parameters(
    method: str,
    query_params: Mapping[str, Any],
    body: Any = None,
) -> NormalizedOperation:
    """
    Extract operation parameters from an already decoded request.

    Args:
        method: HTTP method
        query_params: Query string parameters
        body: Decoded request body (mapping) for POST requests

    Returns:
        NormalizedOperation

    Raises:
        MalformedRequestError: If no query can be located or a parameter is invalid
    """
    method = method.upper()

    if method == "GET":
        source: Mapping[str, Any] = query_params
    elif method == "POST":
        if body is None:
            body = {}
        if isinstance(body, list):
            raise MalformedRequestError("Batched operations are not supported.")
        if not isinstance(body, Mapping):
            raise MalformedRequestError("POST body must be a JSON object.")
        source = body
    else:
        raise MalformedRequestError(
            "GraphQL only supports GET and POST requests.",
            status_code=405,
            headers=[("Allow", "GET, POST")],
        )

    query = source.get("query")
    if not query:
        raise MalformedRequestError("Must provide query string.")
    if not isinstance(query, str):
        raise MalformedRequestError("Query must be a string.")

    operation_name = source.get("operationName") or None
    if operation_name is not None and not isinstance(operation_name, str):
        raise MalformedRequestError("Operation name must be a string.")

    return NormalizedOperation(
        query=query,
        operation_name=operation_name,
        variables=_parse_variables(source.get("variables")),
    )


def _parse_variables(raw: Any) -> dict[str, Any]:
    """Variables arrive as a mapping (JSON body) or a JSON string (query string)."""
    if raw is None or raw == "":
        return {}

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise MalformedRequestError("Variables are invalid JSON.")
        if raw is None:
            return {}

    if not isinstance(raw, Mapping):
        raise MalformedRequestError("Variables must be an object.")

    return dict(raw)


async def normalize_request(
    request: Request,
    max_upload_bytes: Optional[int] = None,
) -> NormalizedOperation:
    """
    Normalize an incoming HTTP request into operation parameters.

    Args:
        request: Starlette request
        max_upload_bytes: Per-file size limit for multipart uploads (None = unlimited)

    Returns:
        NormalizedOperation

    Raises:
        MalformedRequestError: If the request carries no usable operation
        UploadLimitError: If an uploaded file exceeds max_upload_bytes
    """
    if request.method == "GET":
        return get_graphql_parameters("GET", request.query_params)

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type == "multipart/form-data":
        body = await _read_multipart(request, max_upload_bytes)
    elif content_type == "application/graphql":
        raw = await request.body()
        body = {"query": raw.decode("utf-8")}
    else:
        raw = await request.body()
        if not raw:
            body = {}
        else:
            try:
                body = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise MalformedRequestError("POST body sent invalid JSON.")

    return get_graphql_parameters(request.method, request.query_params, body)


class LimitedMultiPartParser(MultiPartParser):
    """
    Multipart form parser enforcing a per-file size limit while the body
    streams in, so an oversized upload is rejected before it is fully read.
    """

    def __init__(self, headers: Headers, stream: Any, *, max_file_size: Optional[int] = None, **kwargs: Any):
        super().__init__(headers, stream, **kwargs)
        self.max_file_size = max_file_size
        self._file_sizes: dict[int, int] = {}  # id(part) -> bytes received

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        part = self._current_part
        if part.file is not None and self.max_file_size is not None:
            size = self._file_sizes.get(id(part), 0) + end - start
            if size > self.max_file_size:
                raise UploadLimitError(part.file.filename or part.field_name, self.max_file_size)
            self._file_sizes[id(part)] = size
        super().on_part_data(data, start, end)


async def _read_multipart(request: Request, max_upload_bytes: Optional[int]) -> dict[str, Any]:
    """Decode a GraphQL multipart request and place the files into its variables."""
    parser = LimitedMultiPartParser(request.headers, request.stream(), max_file_size=max_upload_bytes)
    try:
        form = await parser.parse()
    except MultiPartException as e:
        raise MalformedRequestError(f"Invalid multipart request: {e.message}")

    operations_raw = form.get("operations")
    if not isinstance(operations_raw, str):
        raise MalformedRequestError("Multipart request is missing the 'operations' field.")

    try:
        operations = json.loads(operations_raw)
    except json.JSONDecodeError:
        raise MalformedRequestError("Multipart 'operations' field is invalid JSON.")

    if isinstance(operations, list):
        raise MalformedRequestError("Batched operations are not supported.")
    if not isinstance(operations, dict):
        raise MalformedRequestError("Multipart 'operations' field must be a JSON object.")

    map_raw = form.get("map")
    if map_raw is None:
        return operations
    if not isinstance(map_raw, str):
        raise MalformedRequestError("Multipart 'map' field must be JSON.")

    try:
        file_map = json.loads(map_raw)
    except json.JSONDecodeError:
        raise MalformedRequestError("Multipart 'map' field is invalid JSON.")
    if not isinstance(file_map, dict):
        raise MalformedRequestError("Multipart 'map' field must be a JSON object.")

    for key, paths in file_map.items():
        upload = form.get(key)
        if not isinstance(upload, UploadFile):
            raise MalformedRequestError(f"File missing in the request for map key '{key}'.")

        if not isinstance(paths, list):
            raise MalformedRequestError(f"Map entry '{key}' must be a list of paths.")
        for path in paths:
            _set_path(operations, str(path), upload)
            logger.debug(f"Mapped upload '{upload.filename}' to {path}")

    return operations


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Assign value at a dotted path such as 'variables.files.0'."""
    parts = path.split(".")
    node: Any = target
    for index, part in enumerate(parts):
        is_last = index == len(parts) - 1
        if isinstance(node, list):
            try:
                position = int(part)
                if is_last:
                    node[position] = value
                else:
                    node = node[position]
            except (ValueError, IndexError):
                raise MalformedRequestError(f"Invalid upload path '{path}'.")
        elif isinstance(node, dict):
            if is_last:
                node[part] = value
            else:
                if part not in node or node[part] is None:
                    raise MalformedRequestError(f"Invalid upload path '{path}'.")
                node = node[part]
        else:
            raise MalformedRequestError(f"Invalid upload path '{path}'.")
