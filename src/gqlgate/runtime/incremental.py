"""
Incremental delivery (@defer / @stream) on top of graphql-core.

graphql-core 3.2 executes whole documents only, so incremental delivery is
planned at the document level:

1. Fragment spreads are inlined and every active @defer fragment / @stream
   field of the query operation is recorded with its response path.
2. The initial payload executes the operation with deferred fragments
   removed. Streamed lists are cut to `initialCount` items and the rest is
   delivered as one subsequent payload per streamed field.
3. Each deferred fragment is then executed on its own, with only its
   ancestor selections kept, and delivered as one subsequent payload.

Subsequent payloads use the incremental delivery shape:

    {"incremental": [{"data": {...}, "path": ["user"], "label": "x"}], "hasNext": true}

Mutations and subscriptions are never split; @defer/@stream inside them (and
@defer inside a streamed field) is delivered inline.
"""

from __future__ import annotations

import inspect
import logging
from copy import copy
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterator, Optional, Union
from weakref import WeakKeyDictionary

from graphql import (
    BREAK,
    DirectiveLocation,
    DocumentNode,
    ExecutionResult,
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    GraphQLArgument,
    GraphQLBoolean,
    GraphQLDirective,
    GraphQLError,
    GraphQLInt,
    GraphQLNonNull,
    GraphQLSchema,
    GraphQLString,
    InlineFragmentNode,
    OperationDefinitionNode,
    OperationType,
    SelectionSetNode,
    Visitor,
    get_operation_ast,
    visit,
)
from graphql.execution.values import get_directive_values, get_variable_values

logger = logging.getLogger(__name__)

Path = list[Union[str, int]]


# =============================================================================
# Directives
# =============================================================================

GraphQLDeferDirective = GraphQLDirective(
    name="defer",
    locations=[DirectiveLocation.FRAGMENT_SPREAD, DirectiveLocation.INLINE_FRAGMENT],
    args={
        "if": GraphQLArgument(
            GraphQLNonNull(GraphQLBoolean),
            default_value=True,
            description="Deferred when true or undefined.",
        ),
        "label": GraphQLArgument(GraphQLString, description="Unique name"),
    },
    description="Directs the executor to defer this fragment when the `if` argument is true or undefined.",
)

GraphQLStreamDirective = GraphQLDirective(
    name="stream",
    locations=[DirectiveLocation.FIELD],
    args={
        "if": GraphQLArgument(
            GraphQLNonNull(GraphQLBoolean),
            default_value=True,
            description="Stream when true or undefined.",
        ),
        "label": GraphQLArgument(GraphQLString, description="Unique name"),
        "initialCount": GraphQLArgument(
            GraphQLInt,
            default_value=0,
            description="Number of items to return immediately",
        ),
    },
    description="Directs the executor to stream plural fields when the `if` argument is true or undefined.",
)

_INCREMENTAL_DIRECTIVES = (GraphQLDeferDirective, GraphQLStreamDirective)

_extended_schemas: "WeakKeyDictionary[GraphQLSchema, GraphQLSchema]" = WeakKeyDictionary()


def ensure_incremental_directives(schema: GraphQLSchema) -> GraphQLSchema:
    """
    Return a schema that declares @defer and @stream.

    Schemas that already declare both are returned as is; others get a
    copy with the missing directives added, built once per schema.
    """
    missing = [d for d in _INCREMENTAL_DIRECTIVES if schema.get_directive(d.name) is None]
    if not missing:
        return schema

    extended = _extended_schemas.get(schema)
    if extended is None:
        kwargs = schema.to_kwargs()
        kwargs["directives"] = (*kwargs["directives"], *missing)
        extended = GraphQLSchema(**kwargs)
        _extended_schemas[schema] = extended
        logger.debug(f"Added directives to schema: {[d.name for d in missing]}")
    return extended


# =============================================================================
# Results
# =============================================================================

@dataclass
class IncrementalEntry:
    """One deferred fragment result or batch of streamed items."""
    path: Path
    data: Optional[dict[str, Any]] = None
    items: Optional[list[Any]] = None
    errors: Optional[list[GraphQLError]] = None
    label: Optional[str] = None

    @property
    def formatted(self) -> dict[str, Any]:
        entry: dict[str, Any] = {}
        if self.items is not None:
            entry["items"] = self.items
        else:
            entry["data"] = self.data
        entry["path"] = self.path
        if self.label is not None:
            entry["label"] = self.label
        if self.errors:
            entry["errors"] = [error.formatted for error in self.errors]
        return entry


@dataclass
class SubsequentPayload:
    """A payload following the initial one."""
    incremental: list[IncrementalEntry] = field(default_factory=list)
    has_next: bool = False

    @property
    def formatted(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.incremental:
            payload["incremental"] = [entry.formatted for entry in self.incremental]
        payload["hasNext"] = self.has_next
        return payload


@dataclass
class IncrementalExecution:
    """Initial result plus the lazily computed subsequent payloads."""
    initial_result: ExecutionResult
    subsequent_results: AsyncIterator[SubsequentPayload]


# =============================================================================
# Planning
# =============================================================================

@dataclass(frozen=True)
class DeferredFragment:
    """Active @defer fragment and the selections enclosing it."""
    path: tuple[str, ...]
    ancestors: tuple[Any, ...]
    fragment: InlineFragmentNode
    label: Optional[str] = None


@dataclass(frozen=True)
class StreamedField:
    """Active @stream field; path points at the list."""
    path: tuple[str, ...]
    initial_count: int = 0
    label: Optional[str] = None


@dataclass
class IncrementalPlan:
    """How an operation splits into an initial payload and deferred work."""
    operation: OperationDefinitionNode
    initial_document: DocumentNode
    deferred: list[DeferredFragment] = field(default_factory=list)
    streamed: list[StreamedField] = field(default_factory=list)


class _IncrementalDirectiveFinder(Visitor):
    def __init__(self):
        super().__init__()
        self.found = False

    def enter_directive(self, node, *_args):
        if node.name.value in ("defer", "stream"):
            self.found = True
            return BREAK
        return None


def _without_directive(node: Any, name: str) -> Any:
    clone = copy(node)
    clone.directives = tuple(d for d in (node.directives or ()) if d.name.value != name)
    return clone


class _Planner:
    def __init__(self, fragments: dict[str, FragmentDefinitionNode], variable_values: dict[str, Any]):
        self.fragments = fragments
        self.variable_values = variable_values
        self.deferred: list[DeferredFragment] = []
        self.streamed: list[StreamedField] = []

    def active_args(self, directive: GraphQLDirective, node: Any) -> Optional[dict[str, Any]]:
        args = get_directive_values(directive, node, self.variable_values)
        if args is None or args.get("if") is False:
            return None
        return args

    def inline(self, selection_set: SelectionSetNode, seen: tuple[str, ...] = ()) -> SelectionSetNode:
        """Replace fragment spreads by equivalent inline fragments."""
        selections = []
        for selection in selection_set.selections:
            if isinstance(selection, FragmentSpreadNode):
                name = selection.name.value
                definition = self.fragments.get(name)
                if definition is None or name in seen:
                    continue
                selections.append(
                    InlineFragmentNode(
                        type_condition=definition.type_condition,
                        directives=selection.directives,
                        selection_set=self.inline(definition.selection_set, seen + (name,)),
                        loc=selection.loc,
                    )
                )
            elif getattr(selection, "selection_set", None) is not None:
                clone = copy(selection)
                clone.selection_set = self.inline(selection.selection_set, seen)
                selections.append(clone)
            else:
                selections.append(selection)
        return SelectionSetNode(selections=tuple(selections))

    def collect(
        self,
        selection_set: SelectionSetNode,
        path: tuple[str, ...] = (),
        ancestors: tuple[Any, ...] = (),
        in_stream: bool = False,
    ) -> None:
        for selection in selection_set.selections:
            if isinstance(selection, InlineFragmentNode):
                defer = None if in_stream else self.active_args(GraphQLDeferDirective, selection)
                if defer is not None:
                    fragment = _without_directive(selection, "defer")
                    fragment.selection_set = self.strip(selection.selection_set)
                    self.deferred.append(
                        DeferredFragment(path, ancestors, fragment, defer.get("label"))
                    )
                    self.collect(selection.selection_set, path, ancestors + (fragment,))
                else:
                    self.collect(selection.selection_set, path, ancestors + (selection,), in_stream)

            elif isinstance(selection, FieldNode):
                key = (selection.alias or selection.name).value
                field_path = path + (key,)
                streamed = False
                if not in_stream:
                    stream = self.active_args(GraphQLStreamDirective, selection)
                    if stream is not None:
                        streamed = True
                        self.streamed.append(
                            StreamedField(
                                field_path,
                                max(stream.get("initialCount") or 0, 0),
                                stream.get("label"),
                            )
                        )
                if selection.selection_set is not None:
                    self.collect(
                        selection.selection_set,
                        field_path,
                        ancestors + (_without_directive(selection, "stream"),),
                        in_stream or streamed,
                    )

    def strip(self, selection_set: SelectionSetNode, in_stream: bool = False) -> SelectionSetNode:
        """Drop active deferred fragments and @stream markers."""
        selections = []
        for selection in selection_set.selections:
            if isinstance(selection, InlineFragmentNode):
                if not in_stream and self.active_args(GraphQLDeferDirective, selection) is not None:
                    continue
                clone = _without_directive(selection, "defer")
                clone.selection_set = self.strip(selection.selection_set, in_stream)
            elif isinstance(selection, FieldNode):
                streamed = not in_stream and self.active_args(GraphQLStreamDirective, selection) is not None
                clone = _without_directive(selection, "stream")
                if selection.selection_set is not None:
                    clone.selection_set = self.strip(selection.selection_set, in_stream or streamed)
            else:
                clone = selection
            selections.append(clone)
        return SelectionSetNode(selections=tuple(selections))


def plan_incremental(
    document: DocumentNode,
    operation_name: Optional[str] = None,
    variable_values: Optional[dict[str, Any]] = None,
    schema: Optional[GraphQLSchema] = None,
) -> Optional[IncrementalPlan]:
    """
    Plan incremental delivery for a validated document.

    Args:
        document: Validated document
        operation_name: Operation to plan
        variable_values: Coerced variables, or the raw request variables
            when `schema` is given
        schema: Schema used to coerce raw variables, applying their defaults

    Returns:
        IncrementalPlan, or None when the operation is not a query, has no
        active @defer/@stream usage or its variables do not coerce (plain
        execution reports those errors)

    Raises:
        GraphQLError: A directive argument is invalid for the given variables
    """
    operation = get_operation_ast(document, operation_name)
    if operation is None or operation.operation != OperationType.QUERY:
        return None

    finder = _IncrementalDirectiveFinder()
    visit(document, finder)
    if not finder.found:
        return None

    if schema is not None:
        coerced = get_variable_values(schema, operation.variable_definitions or [], variable_values or {})
        if isinstance(coerced, list):
            return None
        variable_values = coerced

    fragments = {
        definition.name.value: definition
        for definition in document.definitions
        if isinstance(definition, FragmentDefinitionNode)
    }
    planner = _Planner(fragments, variable_values or {})
    selection_set = planner.inline(operation.selection_set)
    planner.collect(selection_set)

    if not planner.deferred and not planner.streamed:
        return None

    inlined = copy(operation)
    inlined.selection_set = selection_set
    initial = copy(operation)
    initial.selection_set = planner.strip(selection_set)

    return IncrementalPlan(
        operation=inlined,
        initial_document=DocumentNode(definitions=(initial,)),
        deferred=planner.deferred,
        streamed=planner.streamed,
    )


def _deferred_document(operation: OperationDefinitionNode, deferred: DeferredFragment) -> DocumentNode:
    """Operation keeping only the chain of selections leading to the fragment."""
    selection: Any = deferred.fragment
    for ancestor in reversed(deferred.ancestors):
        wrapper = copy(ancestor)
        wrapper.selection_set = SelectionSetNode(selections=(selection,))
        selection = wrapper

    clone = copy(operation)
    clone.selection_set = SelectionSetNode(selections=(selection,))
    return DocumentNode(definitions=(clone,))


# =============================================================================
# Execution
# =============================================================================

def _walk(
    value: Any,
    path: tuple[str, ...],
    fan_out_leaf: bool,
    concrete: tuple[Union[str, int], ...] = (),
) -> Iterator[tuple[Path, Any]]:
    """Yield (concrete path, value) for every location matching a response path."""
    if value is None:
        return
    if isinstance(value, list) and (path or fan_out_leaf):
        for index, item in enumerate(value):
            yield from _walk(item, path, fan_out_leaf, concrete + (index,))
        return
    if not path:
        yield list(concrete), value
        return
    if isinstance(value, dict) and path[0] in value:
        yield from _walk(value[path[0]], path[1:], fan_out_leaf, concrete + (path[0],))


async def _run(execute_fn: Callable[..., Any], **kwargs: Any) -> ExecutionResult:
    result = execute_fn(**kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def _split_streams(data: dict[str, Any], streamed: list[StreamedField]) -> list[list[IncrementalEntry]]:
    """Cut streamed lists in place; return the remaining items per streamed field."""
    batches = []
    for stream in streamed:
        entries = []
        for concrete_path, items in _walk(data, stream.path, fan_out_leaf=False):
            if not isinstance(items, list) or len(items) <= stream.initial_count:
                continue
            rest = items[stream.initial_count:]
            del items[stream.initial_count:]
            entries.append(
                IncrementalEntry(
                    path=concrete_path + [stream.initial_count],
                    items=rest,
                    label=stream.label,
                )
            )
        batches.append(entries)
    return batches


async def execute_incrementally(
    execute_fn: Callable[..., Any],
    plan: IncrementalPlan,
    **kwargs: Any,
) -> Union[ExecutionResult, IncrementalExecution]:
    """
    Execute a planned operation.

    Args:
        execute_fn: graphql-core compatible execute function
        plan: Plan from plan_incremental()
        **kwargs: Execution arguments (schema, context_value, variable_values, ...)

    Returns:
        IncrementalExecution, or the plain ExecutionResult when the initial
        payload has no data to extend
    """
    kwargs.pop("document", None)
    initial = await _run(execute_fn, document=plan.initial_document, **kwargs)
    if initial.data is None:
        return initial

    stream_batches = _split_streams(initial.data, plan.streamed)

    async def subsequent() -> AsyncIterator[SubsequentPayload]:
        total = len(stream_batches) + len(plan.deferred)
        emitted = 0
        position = 0

        for entries in stream_batches:
            position += 1
            if entries or position == total:
                emitted += 1
                yield SubsequentPayload(entries, has_next=position < total)

        for deferred in plan.deferred:
            position += 1
            result = await _run(
                execute_fn,
                document=_deferred_document(plan.operation, deferred),
                **kwargs,
            )
            entries = [
                IncrementalEntry(path=concrete_path, data=value, label=deferred.label)
                for concrete_path, value in _walk(result.data, deferred.path, fan_out_leaf=True)
                if isinstance(value, dict)
                and (value or deferred.fragment.type_condition is None)
            ]
            if result.errors:
                if entries:
                    entries[0].errors = list(result.errors)
                else:
                    entries.append(
                        IncrementalEntry(
                            path=list(deferred.path),
                            errors=list(result.errors),
                            label=deferred.label,
                        )
                    )
            if entries or position == total:
                emitted += 1
                yield SubsequentPayload(entries, has_next=position < total)

        logger.debug(f"Incremental delivery finished: {emitted} subsequent payload(s)")

    return IncrementalExecution(initial_result=initial, subsequent_results=subsequent())
