"""
Pipeline plugins.

A plugin contributes to one or more stages of the execution pipeline:

- validation_rules(): extra graphql-core validation rules
- on_context_building(): fields merged into the execution context
- on_execute() / on_subscribe(): per-operation ExecutionHooks applied to
  every result the operation produces (single, incremental or live)
- on_error(): rewrite of errors raised outside execution (context building)

Built-in plugins:
- MaskedErrorsPlugin: sanitizes unexpected errors
- DepthLimitPlugin: rejects operations nested deeper than max_depth
- ExtendContextPlugin: merges request fields into the context
- TelemetryPlugin: OpenTelemetry span per operation
"""

from __future__ import annotations

import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from graphql import (
    ExecutionResult,
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    GraphQLError,
    InlineFragmentNode,
    OperationDefinitionNode,
    ValidationRule,
    get_operation_ast,
)
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ..core.errors import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class OperationArgs:
    """Arguments of one execute/subscribe call."""
    schema: Any
    document: Any
    context_value: Any = None
    variable_values: Optional[dict[str, Any]] = None
    operation_name: Optional[str] = None
    root_value: Any = None

    @property
    def operation(self) -> Optional[OperationDefinitionNode]:
        return get_operation_ast(self.document, self.operation_name)


class ExecutionHooks:
    """Callbacks for one operation; on_result sees every result it produces."""

    def on_result(self, result: ExecutionResult) -> ExecutionResult:
        return result

    def on_done(self) -> None:
        pass


class Plugin:
    """Base class for pipeline plugins. Override the stages you need."""

    def validation_rules(self) -> Sequence[type[ValidationRule]]:
        return ()

    async def on_context_building(self, context: dict[str, Any]) -> Optional[Mapping[str, Any]]:
        return None

    def on_execute(self, args: OperationArgs) -> Optional[ExecutionHooks]:
        return None

    def on_subscribe(self, args: OperationArgs) -> Optional[ExecutionHooks]:
        return self.on_execute(args)

    def on_error(self, error: GraphQLError) -> GraphQLError:
        return error


# =============================================================================
# Error masking
# =============================================================================

DEFAULT_ERROR_MESSAGE = "Unexpected error."


def is_client_safe(error: GraphQLError) -> bool:
    """
    Errors produced by graphql-core itself (syntax, validation) and errors
    resolvers raise deliberately (GraphQLError, ExecutionError) are safe.
    """
    original = error.original_error
    return original is None or isinstance(original, (GraphQLError, ExecutionError))


class _MaskingHooks(ExecutionHooks):
    def __init__(self, plugin: "MaskedErrorsPlugin"):
        self.plugin = plugin

    def on_result(self, result: ExecutionResult) -> ExecutionResult:
        if not result.errors:
            return result
        return ExecutionResult(
            data=result.data,
            errors=[self.plugin.on_error(error) for error in result.errors],
            extensions=result.extensions,
        )


class MaskedErrorsPlugin(Plugin):
    """Replace unexpected error messages so internal detail never reaches clients."""

    def __init__(self, message: str = DEFAULT_ERROR_MESSAGE):
        self.message = message

    def on_execute(self, args: OperationArgs) -> ExecutionHooks:
        return _MaskingHooks(self)

    def on_error(self, error: GraphQLError) -> GraphQLError:
        if is_client_safe(error):
            return error
        logger.debug(f"Masking error: {error.message}")
        return GraphQLError(
            self.message,
            nodes=error.nodes,
            source=error.source,
            positions=error.positions,
            path=error.path,
        )


# =============================================================================
# Depth limit
# =============================================================================

IgnoreRule = Union[str, "re.Pattern[str]", Callable[[str], bool]]


@dataclass
class DepthLimitOptions:
    """Depth limit configuration; ignored fields do not count towards depth."""
    max_depth: int = 10
    ignore: list[IgnoreRule] = field(default_factory=list)


def _is_ignored(name: str, ignore: Sequence[IgnoreRule]) -> bool:
    for rule in ignore:
        if isinstance(rule, str):
            if rule == name:
                return True
        elif isinstance(rule, re.Pattern):
            if rule.search(name):
                return True
        elif callable(rule) and rule(name):
            return True
    return False


def depth_limit_rule(max_depth: int, ignore: Sequence[IgnoreRule] = ()) -> type[ValidationRule]:
    """
    Build a validation rule rejecting operations deeper than max_depth.

    Root fields are at depth 0; introspection fields and ignored fields are
    not counted. Fragment spreads are followed once per path.
    """

    class DepthLimitRule(ValidationRule):
        def enter_operation_definition(self, node: OperationDefinitionNode, *_args):
            fragments = {
                definition.name.value: definition
                for definition in self.context.document.definitions
                if isinstance(definition, FragmentDefinitionNode)
            }
            name = node.name.value if node.name else "anonymous"
            self._reported = False
            self._depth(node, fragments, 0, name, ())

        def _depth(self, node, fragments, depth_so_far, operation_name, seen) -> int:
            if depth_so_far > max_depth:
                if not self._reported:
                    self._reported = True
                    self.report_error(
                        GraphQLError(
                            f"'{operation_name}' exceeds maximum operation depth of {max_depth}",
                            node,
                        )
                    )
                return depth_so_far

            if isinstance(node, FieldNode):
                name = node.name.value
                if name.startswith("__") or _is_ignored(name, ignore) or node.selection_set is None:
                    return 0
                return 1 + max(
                    (
                        self._depth(selection, fragments, depth_so_far + 1, operation_name, seen)
                        for selection in node.selection_set.selections
                    ),
                    default=0,
                )

            if isinstance(node, FragmentSpreadNode):
                name = node.name.value
                if name in seen or name not in fragments:
                    return 0
                return self._depth(fragments[name], fragments, depth_so_far, operation_name, seen + (name,))

            if isinstance(node, (InlineFragmentNode, FragmentDefinitionNode, OperationDefinitionNode)):
                return max(
                    (
                        self._depth(selection, fragments, depth_so_far, operation_name, seen)
                        for selection in node.selection_set.selections
                    ),
                    default=0,
                )

            return 0

    return DepthLimitRule


class DepthLimitPlugin(Plugin):
    """Reject operations whose selection nesting exceeds the configured depth."""

    def __init__(self, options: DepthLimitOptions):
        self.options = options
        self._rule = depth_limit_rule(options.max_depth, options.ignore)

    def validation_rules(self) -> Sequence[type[ValidationRule]]:
        return (self._rule,)


# =============================================================================
# Context extension
# =============================================================================

ContextExtender = Callable[[dict[str, Any]], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]], None]]


class ExtendContextPlugin(Plugin):
    """Merge the extender's fields into the context before any resolver runs."""

    def __init__(self, extender: ContextExtender):
        self.extender = extender

    async def on_context_building(self, context: dict[str, Any]) -> Optional[Mapping[str, Any]]:
        extra = self.extender(context)
        if inspect.isawaitable(extra):
            extra = await extra
        return extra


# =============================================================================
# Telemetry
# =============================================================================

@dataclass
class TelemetryOptions:
    """
    OpenTelemetry tracing options.

    Args:
        enabled: Create spans at all
        tracer_name: Instrumentation scope name
        include_document: Record the operation document as an attribute
        include_variables: Record the variables (JSON) as an attribute
        root_fields_naming: Append root field names to the span name
    """
    enabled: bool = True
    tracer_name: str = "gqlgate"
    include_document: bool = False
    include_variables: bool = False
    root_fields_naming: bool = False


class _SpanHooks(ExecutionHooks):
    def __init__(self, span: trace.Span, label: str):
        self.span = span
        self.label = label
        self.error_count = 0
        self.result_count = 0
        self.started = time.perf_counter()

    def on_result(self, result: ExecutionResult) -> ExecutionResult:
        self.result_count += 1
        if result.errors:
            self.error_count += len(result.errors)
            self.span.set_attribute("graphql.errors.count", self.error_count)
            self.span.set_status(Status(StatusCode.ERROR, result.errors[0].message))
        return result

    def on_done(self) -> None:
        self.span.set_attribute("graphql.results.count", self.result_count)
        self.span.end()
        elapsed = (time.perf_counter() - self.started) * 1000
        logger.debug(f"{self.label} finished in {elapsed:.1f}ms ({self.result_count} result(s), {self.error_count} error(s))")


class TelemetryPlugin(Plugin):
    """Open one span per operation, ended when its last result is produced."""

    def __init__(self, options: Optional[TelemetryOptions] = None):
        self.options = options or TelemetryOptions()
        self.tracer = trace.get_tracer(self.options.tracer_name)

    def on_execute(self, args: OperationArgs) -> ExecutionHooks:
        return self._start("graphql.execute", args)

    def on_subscribe(self, args: OperationArgs) -> ExecutionHooks:
        return self._start("graphql.subscribe", args)

    def _start(self, span_name: str, args: OperationArgs) -> ExecutionHooks:
        operation = args.operation
        attributes: dict[str, Any] = {}

        if operation is not None:
            attributes["graphql.operation.type"] = operation.operation.value
            if operation.name:
                attributes["graphql.operation.name"] = operation.name.value
            if self.options.root_fields_naming:
                root_fields = [
                    selection.name.value
                    for selection in operation.selection_set.selections
                    if isinstance(selection, FieldNode)
                ]
                if root_fields:
                    span_name = f"{span_name} {'+'.join(root_fields)}"

        if self.options.include_document and args.document.loc is not None:
            attributes["graphql.document"] = args.document.loc.source.body
        if self.options.include_variables and args.variable_values:
            attributes["graphql.variables"] = json.dumps(args.variable_values, default=str)

        span = self.tracer.start_span(span_name, attributes=attributes)
        return _SpanHooks(span, span_name)
