"""
Exception hierarchy for graph construction, evaluation and provider calls.
"""
from typing import List, Optional


class ProvGraphError(Exception):
    """Base class for every error raised by provgraph."""


class DefinitionError(ProvGraphError):
    """A graph definition document could not be understood."""

    def __init__(self, message: str, source_file: Optional[str] = None):
        self.source_file = source_file
        if source_file:
            message = f"{source_file}: {message}"
        super().__init__(message)


class GraphError(ProvGraphError):
    """Construction-time error. Raised before any provider is invoked."""


class CyclicDependency(GraphError):
    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__("cyclic dependency: " + " -> ".join(self.path))


class UnknownReference(GraphError):
    def __init__(self, consumer: str, producer: str):
        self.consumer = consumer
        self.producer = producer
        super().__init__(f"node '{consumer}' references undeclared node '{producer}'")


class DuplicateNode(GraphError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"node '{node_id}' is declared more than once")


class MissingProvider(GraphError):
    def __init__(self, kinds: List[str]):
        self.kinds = sorted(set(kinds))
        super().__init__("no provider registered for kind(s): " + ", ".join(self.kinds))


class UnresolvedDependency(ProvGraphError):
    """
    A deferred value was read before its producer was applied.

    The evaluator never resolves a node before its producers, so reaching
    this from inside a run is a defect rather than a user error.
    """

    def __init__(self, description: str):
        self.description = description
        super().__init__(f"value is not resolved yet: {description}")


class ProviderError(ProvGraphError):
    """A provider call failed. Retryable errors are retried with backoff."""

    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        self.attempts = 1
        super().__init__(message)


class UpstreamSkipped(ProvGraphError):
    """A node was never attempted because the run was cut short before it."""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"{node_id}: skipped ({reason})")


class StateError(ProvGraphError):
    """The state file exists but cannot be read or written."""
