"""
Pipeline builder - composes plugins into execution primitives.

Usage:
    factory = build_pipeline(PipelineOptions(
        mask_errors=True,
        depth_limit=DepthLimitOptions(max_depth=10),
        context_extender=lambda ctx: {"auth": ctx["request"].state.auth},
    ))

    primitives = factory()          # fresh per request
    document = primitives.parse(query)
    errors = primitives.validate(schema, document)
    context = await primitives.context_factory({"request": request})
    result = await primitives.execute(OperationArgs(schema, document, context))

Plugin order matters: the first plugin is the outermost one, its result
hooks run last. Error masking is therefore always placed first so every
downstream failure, depth-limit rejections included, is sanitized.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Sequence, Union

from graphql import (
    DocumentNode,
    ExecutionResult,
    GraphQLError,
    GraphQLSchema,
    execute as graphql_execute,
    parse as graphql_parse,
    specified_rules,
    subscribe as graphql_subscribe,
    validate as graphql_validate,
)

from .incremental import IncrementalExecution, SubsequentPayload, execute_incrementally, plan_incremental
from .plugins import (
    ContextExtender,
    DepthLimitOptions,
    DepthLimitPlugin,
    ExecutionHooks,
    ExtendContextPlugin,
    MaskedErrorsPlugin,
    OperationArgs,
    Plugin,
    TelemetryOptions,
    TelemetryPlugin,
)

logger = logging.getLogger(__name__)

ExecuteOutcome = Union[ExecutionResult, IncrementalExecution]
SubscribeOutcome = Union[ExecutionResult, AsyncIterator[ExecutionResult]]


@dataclass
class PipelineOptions:
    """Ordered behaviors composed by build_pipeline()."""
    mask_errors: bool = True
    depth_limit: Optional[DepthLimitOptions] = field(default_factory=DepthLimitOptions)
    context_extender: Optional[ContextExtender] = None
    telemetry: Optional[TelemetryOptions] = None
    extra_plugins: list[Plugin] = field(default_factory=list)


@dataclass(frozen=True)
class PipelinePrimitives:
    """Per-request execution primitives produced by a Pipeline."""
    parse: Callable[[str], DocumentNode]
    validate: Callable[[GraphQLSchema, DocumentNode], list[GraphQLError]]
    execute: Callable[[OperationArgs], Awaitable[ExecuteOutcome]]
    subscribe: Callable[[OperationArgs], Awaitable[SubscribeOutcome]]
    context_factory: Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]
    format_error: Callable[[BaseException], GraphQLError]


class Pipeline:
    """
    Composed plugin chain.

    Holds configuration only; calling the pipeline returns fresh primitives,
    so nothing is shared between requests beyond the plugin list.
    """

    def __init__(self, plugins: Sequence[Plugin]):
        self.plugins = tuple(plugins)
        self.rules = (
            *specified_rules,
            *(rule for plugin in self.plugins for rule in plugin.validation_rules()),
        )

    def __call__(self) -> PipelinePrimitives:
        return PipelinePrimitives(
            parse=self._parse,
            validate=self._validate,
            execute=self._execute,
            subscribe=self._subscribe,
            context_factory=self._context_factory,
            format_error=self._format_error,
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _parse(self, source: str) -> DocumentNode:
        return graphql_parse(source)

    def _validate(self, schema: GraphQLSchema, document: DocumentNode) -> list[GraphQLError]:
        return graphql_validate(schema, document, self.rules)

    async def _context_factory(self, initial: Mapping[str, Any]) -> dict[str, Any]:
        context = dict(initial)
        for plugin in self.plugins:
            extra = await plugin.on_context_building(context)
            if extra:
                context.update(extra)
        return context

    def _format_error(self, error: BaseException) -> GraphQLError:
        if isinstance(error, GraphQLError):
            formatted = error
        else:
            formatted = GraphQLError(str(error), original_error=error)
        for plugin in reversed(self.plugins):
            formatted = plugin.on_error(formatted)
        return formatted

    async def _execute(self, args: OperationArgs) -> ExecuteOutcome:
        hooks = self._hooks(plugin.on_execute(args) for plugin in self.plugins)
        kwargs = dict(
            schema=args.schema,
            root_value=args.root_value,
            context_value=args.context_value,
            variable_values=args.variable_values,
            operation_name=args.operation_name,
        )

        try:
            try:
                plan = plan_incremental(
                    args.document, args.operation_name, args.variable_values, schema=args.schema
                )
            except GraphQLError as e:
                logger.debug(f"Incremental directives rejected: {e.message}")
                outcome: Any = ExecutionResult(data=None, errors=[e])
            else:
                if plan is None:
                    outcome = graphql_execute(document=args.document, **kwargs)
                    if inspect.isawaitable(outcome):
                        outcome = await outcome
                else:
                    outcome = await execute_incrementally(graphql_execute, plan, **kwargs)
        except BaseException:
            self._done(hooks)
            raise

        if isinstance(outcome, IncrementalExecution):
            return IncrementalExecution(
                initial_result=self._apply(outcome.initial_result, hooks),
                subsequent_results=self._map_subsequent(outcome.subsequent_results, hooks),
            )

        result = self._apply(outcome, hooks)
        self._done(hooks)
        return result

    async def _subscribe(self, args: OperationArgs) -> SubscribeOutcome:
        hooks = self._hooks(plugin.on_subscribe(args) for plugin in self.plugins)

        try:
            outcome: Any = graphql_subscribe(
                schema=args.schema,
                document=args.document,
                root_value=args.root_value,
                context_value=args.context_value,
                variable_values=args.variable_values,
                operation_name=args.operation_name,
            )
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except BaseException:
            self._done(hooks)
            raise

        if isinstance(outcome, ExecutionResult):
            result = self._apply(outcome, hooks)
            self._done(hooks)
            return result

        return self._map_events(outcome, hooks)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    @staticmethod
    def _hooks(candidates) -> list[ExecutionHooks]:
        return [hook for hook in candidates if hook is not None]

    @staticmethod
    def _apply(result: ExecutionResult, hooks: list[ExecutionHooks]) -> ExecutionResult:
        # innermost plugin first, so the first plugin sees the final result
        for hook in reversed(hooks):
            result = hook.on_result(result)
        return result

    @staticmethod
    def _done(hooks: list[ExecutionHooks]) -> None:
        for hook in reversed(hooks):
            hook.on_done()

    def _map_events(
        self,
        source: AsyncIterator[ExecutionResult],
        hooks: list[ExecutionHooks],
    ) -> "HookedStream":
        return HookedStream(source, lambda result: self._apply(result, hooks), lambda: self._done(hooks))

    def _map_subsequent(
        self,
        source: AsyncIterator[SubsequentPayload],
        hooks: list[ExecutionHooks],
    ) -> "HookedStream":
        def apply(payload: SubsequentPayload) -> SubsequentPayload:
            for entry in payload.incremental:
                data = entry.items if entry.items is not None else entry.data
                result = self._apply(ExecutionResult(data=data, errors=entry.errors), hooks)
                entry.errors = result.errors
            return payload

        return HookedStream(source, apply, lambda: self._done(hooks))


class HookedStream:
    """
    Async iterator applying result hooks to every item of a source.

    aclose() closes the source and runs the done callback exactly once,
    whether or not iteration ever started; reaching the end of the source
    does the same.
    """

    def __init__(
        self,
        source: AsyncIterator[Any],
        apply: Callable[[Any], Any],
        on_done: Callable[[], None],
    ):
        self._source = source
        self._apply = apply
        self._on_done = on_done
        self._closed = False

    def __aiter__(self) -> "HookedStream":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        try:
            item = await self._source.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        return self._apply(item)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            self._on_done()


PipelineFactory = Pipeline


def build_pipeline(options: Optional[PipelineOptions] = None) -> Pipeline:
    """
    Compose the configured behaviors into a pipeline.

    Order: error masking, depth limit, context extension, telemetry, then
    extra plugins as given.
    """
    options = options or PipelineOptions()
    plugins: list[Plugin] = []

    if options.mask_errors:
        plugins.append(MaskedErrorsPlugin())
    if options.depth_limit is not None:
        plugins.append(DepthLimitPlugin(options.depth_limit))
    if options.context_extender is not None:
        plugins.append(ExtendContextPlugin(options.context_extender))
    if options.telemetry is not None and options.telemetry.enabled:
        plugins.append(TelemetryPlugin(options.telemetry))
    plugins.extend(options.extra_plugins)

    logger.debug(f"Pipeline built with plugins: {[type(p).__name__ for p in plugins]}")
    return Pipeline(plugins)
