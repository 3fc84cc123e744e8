"""
Provider adapter contract.

An adapter wraps one or more external resource kinds behind a single
idempotent ``apply`` call. The core never assumes anything about a kind
beyond this contract.
"""
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from provgraph.errors import MissingProvider

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
READ = "read"


@dataclass
class ProviderResult:
    outputs: Dict[str, Any] = field(default_factory=dict)
    action: str = CREATED


@dataclass(frozen=True)
class KindProfile:
    """Static description of a resource kind served by a catalog adapter."""

    kind: str
    identity: Tuple[str, ...] = ("name",)      # dotted input paths forming the identity key
    generate: Optional[Callable[[str, Dict[str, Any]], Dict[str, Any]]] = None
    required: Tuple[str, ...] = ()
    sensitive: FrozenSet[str] = frozenset()
    plain: FrozenSet[str] = frozenset()
    aliases: Tuple[str, ...] = ()
    lookup: bool = False                      # data source: read-only, nothing is stored


def canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def inputs_digest(inputs: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical(inputs).encode("utf-8")).hexdigest()


def dig(props: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Drill into nested dicts with a dotted path."""
    cur: Any = props
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        cur = cur.get(part)
        if cur is None:
            return default
    return cur


class ProviderAdapter(ABC):
    """
    Base class for every provider adapter.

    Subclasses must implement ``apply``. It has to be idempotent: calling it
    again with the same inputs when the remote object already exists returns
    the object's current outputs instead of creating a duplicate.
    """

    #: kinds this adapter serves; used by ProviderRegistry.register_adapter
    kinds: FrozenSet[str] = frozenset()

    def identity_key(self, kind: str, inputs: Dict[str, Any]) -> str:
        """Stable key identifying the remote object described by ``inputs``."""
        name = inputs.get("name")
        if isinstance(name, str) and name:
            return f"{kind}/{name}"
        return f"{kind}/{inputs_digest(inputs)[:16]}"

    def sensitive_outputs(self, kind: str) -> FrozenSet[str]:
        """Output keys this kind always treats as secrets."""
        return frozenset()

    def plain_outputs(self, kind: str) -> FrozenSet[str]:
        """Output keys that stay displayable even when an input is secret."""
        return frozenset()

    @abstractmethod
    def apply(self, kind: str, inputs: Dict[str, Any]) -> ProviderResult:
        """Create the object, or return the existing one. May raise ProviderError."""


class ProviderRegistry:
    """Maps resource kinds (and their aliases) to adapters."""

    def __init__(self):
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, kind: str, adapter: ProviderAdapter, aliases: Iterable[str] = ()) -> None:
        self._adapters[kind] = adapter
        for alias in aliases:
            self._aliases[alias] = kind

    def register_adapter(self, adapter: ProviderAdapter) -> None:
        for kind in sorted(adapter.kinds):
            self.register(kind, adapter)

    def canonical_kind(self, kind: str) -> str:
        return self._aliases.get(kind, kind)

    def get(self, kind: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(self.canonical_kind(kind))

    def __contains__(self, kind: str) -> bool:
        return self.get(kind) is not None

    def missing(self, kinds: Iterable[str]) -> List[str]:
        return [k for k in kinds if k not in self]

    def require(self, kinds: Iterable[str]) -> None:
        missing = self.missing(kinds)
        if missing:
            raise MissingProvider(missing)

    @property
    def kinds(self) -> List[str]:
        return sorted(self._adapters)
