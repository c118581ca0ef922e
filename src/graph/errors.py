"""
Errors raised by the knowledge graph and its collaborators.

Nothing in the engine is fatal: these surface caller mistakes (unknown
identifiers, invalid configuration). Runtime faults inside the pipeline are
isolated and counted instead.
"""

from __future__ import annotations


class GraphError(Exception):
    """Base class for knowledge graph errors."""


class NotFoundError(GraphError, KeyError):
    """Raised when an operation references a node that is not in the graph."""

    def __init__(self, node_id: str):
        super().__init__(node_id)
        self.node_id = node_id

    def __str__(self) -> str:
        return f"Unknown node: {self.node_id!r}"


class ConfigurationError(GraphError, ValueError):
    """Raised when weights, thresholds or multipliers are out of range."""
