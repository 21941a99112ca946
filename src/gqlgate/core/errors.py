"""
Custom exceptions for the gqlgate server.
"""

from __future__ import annotations

from typing import Optional


class GQLGateError(Exception):
    """Base exception for all gqlgate errors."""
    pass


class ConfigurationError(GQLGateError):
    """Raised at startup when required setup is missing or invalid."""
    pass


class SchemaLoadError(GQLGateError):
    """Raised when the schema provider fails to build the executable schema."""

    def __init__(self, message: str = "Schema could not be loaded"):
        super().__init__(message)


class MalformedRequestError(GQLGateError):
    """Raised when operation parameters cannot be extracted from a request."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        headers: Optional[list[tuple[str, str]]] = None,
    ):
        self.status_code = status_code
        self.headers = headers or []
        super().__init__(message)


class UploadLimitError(MalformedRequestError):
    """Raised when an uploaded file exceeds the configured size limit."""

    def __init__(self, filename: str, limit: int):
        self.filename = filename
        self.limit = limit
        super().__init__(
            f"File '{filename}' exceeds the maximum upload size of {limit} bytes",
            status_code=413,
        )


class ExecutionError(GQLGateError):
    """
    Client-facing resolver error.

    Resolvers raise it when the message is meant for the client; error
    masking keeps its message while every other exception is sanitized.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        # graphql-core copies these onto the GraphQLError wrapping this exception
        self.extensions = {"code": code} if code else {}
        super().__init__(message)


class TransportError(GQLGateError):
    """Raised when writing to the client fails after headers were sent."""
    pass
