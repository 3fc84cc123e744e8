"""
Secret classification.

Sensitivity is recorded per deferred value in a ledger and inherited by every
value derived from a sensitive one (``map``, ``join``, ``concat``). Rendering
through ``render`` is the only sanctioned way to turn a deferred value into
text; sensitive values come out as a redaction marker.
"""
import json
import threading
from typing import Any, Iterable, Set

from provgraph.models.deferred import DeferredValue

REDACTED = "[secret]"
UNKNOWN = "(known after apply)"


class SecretLedger:
    def __init__(self):
        self._marked: Set[int] = set()
        self._lock = threading.Lock()

    def mark(self, value: DeferredValue) -> DeferredValue:
        with self._lock:
            self._marked.add(value.uid)
        return value

    def mark_all(self, values: Iterable[DeferredValue]) -> None:
        with self._lock:
            self._marked.update(v.uid for v in values)

    def is_marked(self, value: DeferredValue) -> bool:
        return value.uid in self._marked

    def is_sensitive(self, value: Any) -> bool:
        if not isinstance(value, DeferredValue):
            return False
        return any(dv.uid in self._marked for dv in value.lineage())

    def __len__(self) -> int:
        return len(self._marked)


# Process-wide ledger. Value uids are never reused, so graphs built in the
# same process do not interfere with each other.
ledger = SecretLedger()


def secret(value: Any) -> DeferredValue:
    """Wrap a literal as a resolved value that is sensitive from the start."""
    dv = DeferredValue.of(value)
    if dv is value:
        # already deferred: derive so the caller's value is not re-classified
        dv = value.map(lambda v: v, label="secret")
    return ledger.mark(dv)


def is_sensitive(value: Any) -> bool:
    return ledger.is_sensitive(value)


def any_sensitive(values: Iterable[Any]) -> bool:
    return any(ledger.is_sensitive(v) for v in values)


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(value)


def render_deep(obj: Any, marker: str = REDACTED) -> Any:
    """Like ``render`` but keeps the dict/list shape of ``obj``."""
    if isinstance(obj, DeferredValue):
        if ledger.is_sensitive(obj):
            return marker
        if not obj.is_resolved:
            return UNKNOWN
        return render_deep(obj.resolve(), marker)
    if isinstance(obj, dict):
        return {k: render_deep(v, marker) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [render_deep(v, marker) for v in obj]
    return obj


def render(value: Any, marker: str = REDACTED) -> str:
    """
    Render a value for display.

    Sensitive deferred values (and structures containing them) have the
    secret parts replaced with ``marker``; unresolved values render as
    ``UNKNOWN``.
    """
    return _to_text(render_deep(value, marker))
