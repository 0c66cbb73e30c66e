"""
Graph-as-code for the workflow engine.

A workflow is a step table ``{name: async step function}`` plus an edge map
``{name: Edge}``. An edge is either fixed (always the same next step) or
conditional (a pure function of the state picks the next step from a declared
set of targets). ``WorkflowGraph.run`` walks the table from START to END.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from ..exceptions import StateError
from ..state import TERMINAL_NODE, WorkflowState

logger = logging.getLogger(__name__)

START = "START"
END = TERMINAL_NODE

StepFunction = Callable[[WorkflowState], Awaitable[WorkflowState]]
StepHook = Callable[[str, WorkflowState], Awaitable[None]]


@dataclass(frozen=True)
class FixedEdge:
    target: str


@dataclass(frozen=True)
class ConditionalEdge:
    """Next step computed from the state; must be one of ``targets``."""

    condition: Callable[[WorkflowState], str]
    targets: Tuple[str, ...]


Edge = Union[FixedEdge, ConditionalEdge]


def resolve_edge(source: str, edge: Edge, state: WorkflowState) -> str:
    if isinstance(edge, FixedEdge):
        return edge.target
    target = edge.condition(state)
    if target not in edge.targets:
        raise StateError(
            f"Edge from '{source}' chose '{target}', expected one of {', '.join(edge.targets)}",
            thread_id=state.thread_id,
        )
    return target


class WorkflowGraph:
    """Step table, edge map and the interpreter loop that walks them."""

    def __init__(self):
        self.steps: Dict[str, StepFunction] = {}
        self.edges: Dict[str, Edge] = {}

    def add_step(self, name: str, func: StepFunction) -> None:
        if name in (START, END):
            raise ValueError(f"'{name}' is reserved")
        if name in self.steps:
            raise ValueError(f"Step '{name}' already defined")
        self.steps[name] = func

    def add_edge(self, source: str, target: str) -> None:
        self._set_edge(source, FixedEdge(target))

    def add_conditional_edge(self, source: str, condition: Callable[[WorkflowState], str], targets) -> None:
        self._set_edge(source, ConditionalEdge(condition, tuple(targets)))

    def _set_edge(self, source: str, edge: Edge) -> None:
        if source in self.edges:
            raise ValueError(f"Step '{source}' already has an outgoing edge")
        self.edges[source] = edge

    def validate(self) -> None:
        """Check that every edge connects known steps and every step can exit."""
        if START not in self.edges:
            raise ValueError("Graph has no entry edge from START")
        for source, edge in self.edges.items():
            if source != START and source not in self.steps:
                raise ValueError(f"Edge from unknown step '{source}'")
            targets = (edge.target,) if isinstance(edge, FixedEdge) else edge.targets
            for target in targets:
                if target != END and target not in self.steps:
                    raise ValueError(f"Edge from '{source}' to unknown step '{target}'")
        missing = [name for name in self.steps if name not in self.edges]
        if missing:
            raise ValueError(f"Steps without an outgoing edge: {', '.join(missing)}")

    async def run(
        self,
        state: WorkflowState,
        max_steps: int = 20,
        before_step: Optional[StepHook] = None,
        after_step: Optional[StepHook] = None,
    ) -> WorkflowState:
        """
        Drive ``state`` from START to END.

        Each visited step is recorded with ``state.enter`` before its function
        runs. Hooks are awaited around every step and once more at END.

        Raises:
            StateError: On an unknown step or when the step budget is exhausted
        """
        current = resolve_edge(START, self.edges[START], state)
        taken = 0
        while current != END:
            if current not in self.steps:
                raise StateError(f"Unknown workflow step '{current}'", thread_id=state.thread_id)
            if taken >= max_steps:
                raise StateError(f"Workflow exceeded {max_steps} steps", thread_id=state.thread_id)
            taken += 1

            state = state.enter(current)
            if before_step is not None:
                await before_step(current, state)
            state = await self.steps[current](state)
            if after_step is not None:
                await after_step(current, state)
            logger.debug(f"Step '{current}' finished for {state.thread_id}")
            current = resolve_edge(current, self.edges[current], state)

        state = state.enter(END)
        if after_step is not None:
            await after_step(END, state)
        return state
