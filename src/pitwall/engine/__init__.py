"""
Workflow engine: step graph and the analysis workflow built on it.
"""

from .graph import END, START, ConditionalEdge, FixedEdge, WorkflowGraph
from .workflow import APOLOGY, WorkflowEngine, guess_intent

__all__ = [
    "APOLOGY",
    "ConditionalEdge",
    "END",
    "FixedEdge",
    "START",
    "WorkflowEngine",
    "WorkflowGraph",
    "guess_intent",
]
