import json
import os

import yaml


def detect_format(filepath: str) -> str:
    """
    Return 'hcl', 'yaml', or 'unknown'.

    JSON documents with a top-level 'resources' list load through the YAML
    loader as well.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext in (".tf", ".hcl"):
        return "hcl"

    if ext == ".json":
        try:
            with open(filepath, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        if isinstance(data, dict) and isinstance(data.get("resources"), list):
            return "yaml"
        return "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath, encoding="utf-8") as fh:
                doc = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError):
            return "unknown"
        # settings files and unrelated manifests have no resources list
        if isinstance(doc, dict) and isinstance(doc.get("resources"), list):
            return "yaml"

    return "unknown"
