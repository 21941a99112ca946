"""
Server settings loaded from environment variables.
"""

from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphQLSettings(BaseSettings):
    """
    Settings for the GraphQL server.

    Every field can be overridden with a GQLGATE_ prefixed environment
    variable, e.g. GQLGATE_MAX_DEPTH=15 or GQLGATE_MASK_ERRORS=false.
    """

    model_config = SettingsConfigDict(
        env_prefix="GQLGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Endpoints
    graphql_path: str = "/graphql"
    subscriptions_path: Optional[str] = "/subscriptions"
    playground_path: Optional[str] = "/playground"

    # Uploads
    max_upload_size: str = "20mb"

    # Pipeline
    mask_errors: bool = True
    max_depth: int = 10
    depth_ignore: list[str] = []

    # WebSocket keep-alive for the legacy graphql-ws protocol (seconds)
    keep_alive_interval: Optional[float] = None

    # App
    cors_origins: list[str] = ["*"]
    playground_headers: dict[str, str] = {}
