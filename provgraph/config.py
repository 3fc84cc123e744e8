"""
Run settings, read from ``provgraph.yaml`` when present.
"""
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

import yaml
from rich.console import Console

from provgraph.classifier import REDACTED
from provgraph.errors import DefinitionError

console = Console(stderr=True)

CONFIG_FILE = "provgraph.yaml"


@dataclass
class Settings:
    workers: int = 4
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    state_file: str = ".provgraph/state.json"
    backend_file: str = ".provgraph/backend.json"
    redaction_marker: str = REDACTED

    def override(self, **values: Any) -> "Settings":
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load settings from ``path`` or, if not given, from ``provgraph.yaml`` in
    the working directory. A missing default file yields the defaults.
    """
    if path is None:
        if not os.path.exists(CONFIG_FILE):
            return Settings()
        path = CONFIG_FILE

    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise DefinitionError(f"cannot read settings: {exc}", path) from exc
    if not isinstance(data, dict):
        raise DefinitionError("settings must be a mapping", path)

    known = {f.name: f for f in fields(Settings)}
    values: Dict[str, Any] = {}
    for key, val in data.items():
        if key not in known:
            console.print(f"[yellow]Warning:[/yellow] unknown setting '{key}' in {path}, ignoring.")
            continue
        cast = known[key].type
        try:
            values[key] = cast(val) if cast in (int, float, str) else val
        except (TypeError, ValueError) as exc:
            raise DefinitionError(f"setting '{key}': {exc}", path) from exc

    settings = Settings(**values)
    if settings.workers < 1 or settings.max_attempts < 1:
        raise DefinitionError("workers and max_attempts must be at least 1", path)
    return settings
