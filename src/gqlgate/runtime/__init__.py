"""
Runtime module - execution pipeline, incremental delivery and result modes.
"""

from __future__ import annotations

from .incremental import (
    GraphQLDeferDirective,
    GraphQLStreamDirective,
    IncrementalEntry,
    IncrementalExecution,
    IncrementalPlan,
    SubsequentPayload,
    ensure_incremental_directives,
    execute_incrementally,
    plan_incremental,
)
from .pipeline import (
    Pipeline,
    PipelineFactory,
    PipelineOptions,
    PipelinePrimitives,
    build_pipeline,
)
from .plugins import (
    DEFAULT_ERROR_MESSAGE,
    DepthLimitOptions,
    DepthLimitPlugin,
    ExecutionHooks,
    ExtendContextPlugin,
    MaskedErrorsPlugin,
    OperationArgs,
    Plugin,
    TelemetryOptions,
    TelemetryPlugin,
    depth_limit_rule,
)
from .processor import process_request, run_operation
from .results import (
    IncrementalResponse,
    LiveStream,
    OperationResult,
    OperationStream,
    SingleResponse,
)

__all__ = [
    # Pipeline
    "Pipeline",
    "PipelineFactory",
    "PipelineOptions",
    "PipelinePrimitives",
    "build_pipeline",
    # Plugins
    "Plugin",
    "ExecutionHooks",
    "OperationArgs",
    "MaskedErrorsPlugin",
    "DEFAULT_ERROR_MESSAGE",
    "DepthLimitPlugin",
    "DepthLimitOptions",
    "depth_limit_rule",
    "ExtendContextPlugin",
    "TelemetryPlugin",
    "TelemetryOptions",
    # Incremental delivery
    "GraphQLDeferDirective",
    "GraphQLStreamDirective",
    "IncrementalEntry",
    "IncrementalExecution",
    "IncrementalPlan",
    "SubsequentPayload",
    "ensure_incremental_directives",
    "execute_incrementally",
    "plan_incremental",
    # Results
    "OperationStream",
    "SingleResponse",
    "IncrementalResponse",
    "LiveStream",
    "OperationResult",
    # Processing
    "process_request",
    "run_operation",
]
