"""
Deferred values: placeholders for resource attributes that are only known
once the producing resource has been applied.

A value is either resolved (it holds a concrete value) or pending on exactly
one producer. The producer is either a node output (``node_id`` + ``key``,
fulfilled by the evaluator) or a pure transform over other deferred values
(built with ``map``/``join``), which resolves lazily once all of its parents
have resolved.
"""
import itertools
import threading
from typing import Any, Callable, Iterator, List, Optional, Set, Tuple

from provgraph.errors import UnresolvedDependency

_ids = itertools.count(1)
_write_lock = threading.Lock()
_UNSET = object()


class DeferredValue:
    __slots__ = ("uid", "node_id", "key", "parents", "transform", "label", "_value")

    def __init__(
        self,
        node_id: Optional[str] = None,
        key: Optional[str] = None,
        parents: Tuple["DeferredValue", ...] = (),
        transform: Optional[Callable[[Tuple[Any, ...]], Any]] = None,
        label: str = "",
    ):
        self.uid = next(_ids)
        self.node_id = node_id
        self.key = key
        self.parents = tuple(parents)
        self.transform = transform
        self.label = label
        self._value: Any = _UNSET

    # ------------------------------------------------------------ constructors
    @classmethod
    def of(cls, value: Any) -> "DeferredValue":
        """Return an already-resolved value."""
        if isinstance(value, DeferredValue):
            return value
        dv = cls(label="literal")
        dv._value = value
        return dv

    @classmethod
    def output(cls, node_id: str, key: str) -> "DeferredValue":
        """Return a value pending on output ``key`` of node ``node_id``."""
        return cls(node_id=node_id, key=key)

    # ------------------------------------------------------------ inspection
    @property
    def is_output(self) -> bool:
        return self.node_id is not None

    @property
    def is_resolved(self) -> bool:
        if self._value is not _UNSET:
            return True
        if self.transform is not None:
            return all(p.is_resolved for p in self.parents)
        return False

    def lineage(self) -> Iterator["DeferredValue"]:
        """Yield this value and every value it is derived from."""
        seen: Set[int] = set()
        stack: List[DeferredValue] = [self]
        while stack:
            dv = stack.pop()
            if dv.uid in seen:
                continue
            seen.add(dv.uid)
            yield dv
            stack.extend(dv.parents)

    def producers(self) -> Set[str]:
        """Ids of every node whose outputs this value depends on."""
        return {dv.node_id for dv in self.lineage() if dv.node_id is not None}

    def describe(self) -> str:
        if self.is_output:
            return f"{self.node_id}.{self.key}"
        if self.transform is not None:
            inner = ", ".join(p.describe() for p in self.parents)
            return f"{self.label or 'derived'}({inner})"
        return self.label or "literal"

    # ------------------------------------------------------------ resolution
    def resolve(self) -> Any:
        if self._value is not _UNSET:
            return self._value
        if self.transform is None or not all(p.is_resolved for p in self.parents):
            raise UnresolvedDependency(self.describe())
        result = self.transform(tuple(p.resolve() for p in self.parents))
        with _write_lock:
            if self._value is _UNSET:
                self._value = result
        return self._value

    def fulfil(self, value: Any) -> None:
        """Resolve a node output. Each output is written exactly once."""
        if not self.is_output:
            raise TypeError(f"{self.describe()} is not a node output")
        with _write_lock:
            if self._value is not _UNSET:
                raise ValueError(f"{self.describe()} is already resolved")
            self._value = value

    # ------------------------------------------------------------ combinators
    def map(self, fn: Callable[[Any], Any], label: str = "map") -> "DeferredValue":
        return DeferredValue(parents=(self,), transform=lambda vals: fn(vals[0]), label=label)

    def get(self, item: Any) -> "DeferredValue":
        return self.map(lambda v: v[item], label=f"get[{item!r}]")

    def __repr__(self) -> str:
        state = "resolved" if self.is_resolved else "pending"
        return f"<DeferredValue #{self.uid} {self.describe()} {state}>"


def join(*values: Any) -> DeferredValue:
    """Combine several values into one that resolves to a tuple."""
    parents = tuple(DeferredValue.of(v) for v in values)
    return DeferredValue(parents=parents, transform=tuple, label="join")


def concat(*parts: Any) -> DeferredValue:
    """String interpolation over literals and deferred values."""
    parents = tuple(DeferredValue.of(p) for p in parts)
    return DeferredValue(
        parents=parents,
        transform=lambda vals: "".join(str(v) for v in vals),
        label="concat",
    )


def find_deferred(obj: Any) -> List[DeferredValue]:
    """Collect deferred values nested anywhere in dicts, lists and tuples."""
    found: List[DeferredValue] = []
    if isinstance(obj, DeferredValue):
        found.append(obj)
    elif isinstance(obj, dict):
        for v in obj.values():
            found.extend(find_deferred(v))
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            found.extend(find_deferred(item))
    return found


def resolve_deep(obj: Any) -> Any:
    """Replace every nested deferred value with its resolved value."""
    if isinstance(obj, DeferredValue):
        return obj.resolve()
    if isinstance(obj, dict):
        return {k: resolve_deep(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [resolve_deep(v) for v in obj]
    if isinstance(obj, tuple):
        return tuple(resolve_deep(v) for v in obj)
    return obj
