"""
GraphQL server - main entry point for serving a schema.

Usage:
    from gqlgate import GraphQLServer, StaticSchemaProvider

    server = GraphQLServer(StaticSchemaProvider(schema))
    app = server.create_app()

    # Or mount onto an existing app
    server.apply_graphql(app)
    server.apply_playground(app)
    server.create_subscriptions(app)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Iterable, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from graphql import GraphQLSchema
from starlette.requests import HTTPConnection

from .api.router import GraphQLDispatcher, create_graphql_router
from .core.config import GraphQLSettings
from .core.context import RequestContext
from .core.errors import ConfigurationError, SchemaLoadError
from .core.schema import SchemaProvider
from .core.utils import parse_size_limit
from .playground import mount_playground
from .runtime.incremental import ensure_incremental_directives
from .runtime.pipeline import Pipeline, PipelineOptions, PipelinePrimitives, build_pipeline
from .runtime.plugins import DEFAULT_ERROR_MESSAGE, ContextExtender, DepthLimitOptions, Plugin, TelemetryOptions
from .websocket.router import SubscriptionServer

logger = logging.getLogger(__name__)


class HealthcheckLogFilter(logging.Filter):
    """Filter out noisy healthcheck logs."""

    FILTERED_PATHS = ("/health",)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for path in self.FILTERED_PATHS:
            if f'"{path}' in message or f" {path} " in message:
                return False
        return True


def request_context_extender(context: dict[str, Any]) -> dict[str, Any]:
    """Default context extender: expose info/config/auth set by upstream middleware."""
    connection: Optional[HTTPConnection] = context.get("request")
    if connection is None:
        return RequestContext().as_dict()
    return RequestContext.from_connection(connection).as_dict()


class GraphQLServer:
    """
    GraphQL server over one HTTP endpoint and one WebSocket endpoint.

    Features:
    - Single JSON, multipart/mixed (@defer/@stream) and text/event-stream
      (subscriptions) responses on the same endpoint
    - graphql-ws / graphql-transport-ws subscriptions
    - Error masking, depth limit, context extension and tracing plugins
    - GraphiQL playground
    """

    def __init__(
        self,
        schema_provider: SchemaProvider,
        settings: Optional[GraphQLSettings] = None,
        *,
        context_extender: Optional[ContextExtender] = None,
        telemetry: Optional[TelemetryOptions] = None,
        extra_plugins: Iterable[Plugin] = (),
    ):
        """
        Initialize server.

        Args:
            schema_provider: Object with an async load() returning the schema
            settings: Server settings (default: read from GQLGATE_* environment)
            context_extender: Builds the extra context fields from the raw
                context ({"request": ...}); defaults to info/config/auth from
                the connection state
            telemetry: OpenTelemetry options (disabled when None)
            extra_plugins: Additional pipeline plugins, applied last

        Raises:
            ConfigurationError: If graphql_path is missing or max_upload_size is invalid
        """
        if schema_provider is None:
            raise ConfigurationError("You must provide a schema provider!")

        self.settings = settings or GraphQLSettings()
        if not self.settings.graphql_path:
            raise ConfigurationError("You must provide a graphql_path!")

        self.schema_provider = schema_provider
        self.max_upload_bytes = parse_size_limit(self.settings.max_upload_size)

        self.pipeline: Pipeline = build_pipeline(
            PipelineOptions(
                mask_errors=self.settings.mask_errors,
                depth_limit=DepthLimitOptions(
                    max_depth=self.settings.max_depth,
                    ignore=list(self.settings.depth_ignore),
                ),
                context_extender=context_extender or request_context_extender,
                telemetry=telemetry,
                extra_plugins=list(extra_plugins),
            )
        )
        self.dispatcher = GraphQLDispatcher(self.max_upload_bytes)
        self.subscription_server: Optional[SubscriptionServer] = None

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def get_enveloped(self) -> PipelinePrimitives:
        """Fresh pipeline primitives for one request."""
        return self.pipeline()

    async def get_graphql_schema(self) -> GraphQLSchema:
        """
        Load the current schema.

        Raises:
            SchemaLoadError: If the provider fails (logged with traceback)
        """
        try:
            return await self.schema_provider.load()
        except SchemaLoadError:
            logger.exception("Schema could not be loaded")
            raise
        except Exception as e:
            logger.exception(f"Schema could not be loaded: {e}")
            raise SchemaLoadError() from e

    async def get_graphql_options(self, connection: HTTPConnection) -> dict[str, Any]:
        """
        Build execution options for a connection.

        Returns:
            Dict with the schema, the pipeline primitives used to build the
            context and the context itself
        """
        schema = ensure_incremental_directives(await self.get_graphql_schema())
        primitives = self.get_enveloped()
        context = await primitives.context_factory({"request": connection})
        return {
            "schema": schema,
            "primitives": primitives,
            "context_value": context,
        }

    # -------------------------------------------------------------------------
    # Mounting
    # -------------------------------------------------------------------------

    def apply_graphql(self, app: FastAPI) -> None:
        """Mount the GraphQL endpoint (GET and POST)."""
        if app is None:
            raise ConfigurationError("You must provide a FastAPI app instance!")

        app.include_router(create_graphql_router(self))

        @app.exception_handler(SchemaLoadError)
        async def schema_load_error_handler(request: Request, exc: SchemaLoadError):
            return JSONResponse(
                {"errors": [{"message": DEFAULT_ERROR_MESSAGE}]},
                status_code=500,
            )

        logger.info(f"GraphQL endpoint mounted at {self.settings.graphql_path}")

    def apply_playground(self, app: FastAPI) -> None:
        """Mount the GraphiQL playground."""
        if app is None:
            raise ConfigurationError("You must provide a FastAPI app instance!")
        if not self.settings.playground_path:
            raise ConfigurationError("You must provide a playground_path to apply_playground!")

        mount_playground(
            app,
            path=self.settings.playground_path,
            endpoint=self.settings.graphql_path,
            subscription_endpoint=self.settings.subscriptions_path,
            headers=self.settings.playground_headers,
        )
        logger.info(f"Playground mounted at {self.settings.playground_path}")

    def create_subscriptions(self, app: FastAPI) -> SubscriptionServer:
        """Mount the WebSocket subscription endpoint."""
        if app is None:
            raise ConfigurationError("You must provide a FastAPI app instance!")
        if not self.settings.subscriptions_path:
            raise ConfigurationError("You must provide a subscriptions_path to create_subscriptions!")

        subscription_server = SubscriptionServer(self, self.settings.keep_alive_interval)
        self.subscription_server = subscription_server

        @app.websocket(self.settings.subscriptions_path)
        async def subscriptions_endpoint(websocket: WebSocket):
            await subscription_server.handle_connection(websocket)

        logger.info(f"Subscriptions mounted at {self.settings.subscriptions_path}")
        return subscription_server

    def create_app(self, title: str = "GraphQL Server") -> FastAPI:
        """
        Create a FastAPI application with every endpoint mounted.

        Includes CORS, /health, the GraphQL endpoint, and the playground
        and subscriptions when their paths are configured.
        """

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            logging.getLogger("uvicorn.access").addFilter(HealthcheckLogFilter())
            yield
            if self.subscription_server is not None:
                await self.subscription_server.registry.shutdown()

        app = FastAPI(title=title, version="1.0.0", lifespan=lifespan)

        # CORS
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        # Health check
        @app.get("/health")
        async def health():
            return {"status": "ok"}

        self.apply_graphql(app)
        if self.settings.playground_path:
            self.apply_playground(app)
        if self.settings.subscriptions_path:
            self.create_subscriptions(app)

        app.state.graphql_server = self
        return app
