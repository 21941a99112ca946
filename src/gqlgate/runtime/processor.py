"""
Operation processor - turns a normalized operation into an OperationResult.

Steps:
1. Build the execution context with the pipeline's context_factory
2. Parse and validate the document
3. Resolve the operation to run (operationName)
4. Subscribe (subscription) or execute (query/mutation)
5. Classify the outcome as SingleResponse, IncrementalResponse or LiveStream

Errors raised before the outcome is known become a SingleResponse; errors
raised by an event source mid-stream become one errors payload at the end
of that stream.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Mapping, Optional

from graphql import (
    ExecutionResult,
    GraphQLError,
    GraphQLSchema,
    OperationType,
    get_operation_ast,
)

from ..core.request_parser import NormalizedOperation
from .incremental import IncrementalExecution, SubsequentPayload, ensure_incremental_directives
from .pipeline import PipelinePrimitives
from .plugins import OperationArgs
from .results import (
    IncrementalResponse,
    LiveStream,
    OperationResult,
    OperationStream,
    SingleResponse,
)

logger = logging.getLogger(__name__)


def _errors_payload(errors: list[GraphQLError]) -> dict[str, Any]:
    return {"errors": [error.formatted for error in errors]}


def _error_response(
    status: int,
    errors: list[GraphQLError],
    format_error: Callable[[BaseException], GraphQLError],
    headers: Optional[list[tuple[str, str]]] = None,
) -> SingleResponse:
    return SingleResponse(
        status=status,
        payload=_errors_payload([format_error(error) for error in errors]),
        headers=headers or [],
    )


async def _live_payloads(
    source: AsyncIterator[ExecutionResult],
    format_error: Callable[[BaseException], GraphQLError],
) -> AsyncIterator[dict[str, Any]]:
    try:
        async for result in source:
            yield result.formatted
    except Exception as e:
        logger.error(f"Event source failed: {e}", exc_info=True)
        yield _errors_payload([format_error(e)])
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


async def _incremental_payloads(
    execution: IncrementalExecution,
    format_error: Callable[[BaseException], GraphQLError],
) -> AsyncIterator[dict[str, Any]]:
    subsequent: AsyncIterator[SubsequentPayload] = execution.subsequent_results
    try:
        yield {**execution.initial_result.formatted, "hasNext": True}
        async for payload in subsequent:
            yield payload.formatted
    except Exception as e:
        logger.error(f"Deferred execution failed: {e}", exc_info=True)
        yield {**_errors_payload([format_error(e)]), "hasNext": False}
    finally:
        aclose = getattr(subsequent, "aclose", None)
        if aclose is not None:
            await aclose()


async def process_request(
    operation: NormalizedOperation,
    method: str,
    schema: GraphQLSchema,
    primitives: PipelinePrimitives,
    initial_context: Mapping[str, Any],
) -> OperationResult:
    """
    Build the execution context, then validate and run one operation.

    Args:
        operation: Normalized operation parameters
        method: HTTP method ("GET" or "POST"); mutations require POST
        schema: Executable schema
        primitives: Fresh pipeline primitives for this request
        initial_context: Raw context passed to the context factory

    Returns:
        Exactly one OperationResult variant
    """
    try:
        context = await primitives.context_factory(initial_context)
    except Exception as e:
        logger.error(f"Context building failed: {e}", exc_info=True)
        return _error_response(500, [e], primitives.format_error)

    return await run_operation(operation, method, schema, primitives, context)


async def run_operation(
    operation: NormalizedOperation,
    method: str,
    schema: GraphQLSchema,
    primitives: PipelinePrimitives,
    context: Any,
) -> OperationResult:
    """Validate and run one operation with an already built context."""
    format_error = primitives.format_error
    schema = ensure_incremental_directives(schema)

    # Parse
    try:
        document = primitives.parse(operation.query)
    except GraphQLError as e:
        return _error_response(400, [e], format_error)

    # Validate
    validation_errors = primitives.validate(schema, document)
    if validation_errors:
        return _error_response(400, validation_errors, format_error)

    # Resolve operation
    operation_ast = get_operation_ast(document, operation.operation_name)
    if operation_ast is None:
        return _error_response(
            400,
            [GraphQLError("Could not determine what operation to execute.")],
            format_error,
        )

    if method == "GET" and operation_ast.operation == OperationType.MUTATION:
        return _error_response(
            405,
            [GraphQLError("Can only perform a mutation operation from a POST request.")],
            format_error,
            headers=[("Allow", "POST")],
        )

    args = OperationArgs(
        schema=schema,
        document=document,
        context_value=context,
        variable_values=operation.variables,
        operation_name=operation.operation_name,
    )
    label = operation.operation_name or operation_ast.operation.value

    # Subscription
    if operation_ast.operation == OperationType.SUBSCRIPTION:
        outcome = await primitives.subscribe(args)
        if isinstance(outcome, ExecutionResult):
            return SingleResponse(status=200, payload=outcome.formatted)
        logger.debug(f"Live stream opened: {label}")
        stream = OperationStream(
            _live_payloads(outcome, format_error), label, release=getattr(outcome, "aclose", None)
        )
        return LiveStream(stream)

    # Query / mutation
    outcome = await primitives.execute(args)
    if isinstance(outcome, IncrementalExecution):
        logger.debug(f"Incremental response opened: {label}")
        stream = OperationStream(
            _incremental_payloads(outcome, format_error),
            label,
            release=getattr(outcome.subsequent_results, "aclose", None),
        )
        return IncrementalResponse(stream)
    return SingleResponse(status=200, payload=outcome.formatted)
