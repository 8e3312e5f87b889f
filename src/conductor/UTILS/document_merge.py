"""
Layered merging of compose documents.

Every service field carries an explicit merge strategy instead of relying on
plain dictionary overwrite:

* OVERWRITE     - the later value replaces the earlier one.
* MAP_MERGE     - mappings are merged recursively, later keys win.
* KEYED_REPLACE - list entries are matched by a key; a match replaces the
                  earlier entry in place, anything else is appended.
* UNION         - list entries are appended unless already present.

A service field set to null in a later file removes it.
"""
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import ValidationError


class MergeStrategy(str, Enum):
    """How a field from a later document combines with an earlier one."""

    OVERWRITE = "overwrite"
    MAP_MERGE = "map_merge"
    KEYED_REPLACE = "keyed_replace"
    UNION = "union"


SERVICE_FIELD_STRATEGIES: Dict[str, MergeStrategy] = {
    "environment": MergeStrategy.MAP_MERGE,
    "labels": MergeStrategy.MAP_MERGE,
    "build": MergeStrategy.MAP_MERGE,
    "healthcheck": MergeStrategy.MAP_MERGE,
    "deploy": MergeStrategy.MAP_MERGE,
    "logging": MergeStrategy.MAP_MERGE,
    "depends_on": MergeStrategy.MAP_MERGE,
    "networks": MergeStrategy.MAP_MERGE,
    "ports": MergeStrategy.KEYED_REPLACE,
    "volumes": MergeStrategy.KEYED_REPLACE,
    "env_file": MergeStrategy.UNION,
}


def port_key(entry: Any) -> Any:
    """
    Merge key of a port entry: the container-side port and protocol.
    """
    if isinstance(entry, dict):
        return (str(entry.get("target")), str(entry.get("protocol") or "tcp"))
    text = str(entry)
    protocol = "tcp"
    if "/" in text:
        text, protocol = text.rsplit("/", 1)
    return (text.rsplit(":", 1)[-1], protocol)


def volume_key(entry: Any) -> Any:
    """
    Merge key of a volume mount: the container-side target path.
    """
    if isinstance(entry, dict):
        return entry.get("target")
    parts = str(entry).split(":")
    if len(parts) == 1:
        return parts[0]
    return parts[1]


KEY_FUNCTIONS: Dict[str, Callable[[Any], Any]] = {
    "ports": port_key,
    "volumes": volume_key,
}


def _list_to_mapping(items: List[Any], field: str) -> Dict[str, Any]:
    """
    Converts the list forms of environment, labels, depends_on and networks into mappings.
    """
    result: Dict[str, Any] = {}
    for item in items:
        text = str(item)
        if field in ("environment", "labels"):
            if "=" in text:
                key, value = text.split("=", 1)
                result[key] = value
            else:
                result[text] = None
        elif field == "depends_on":
            result[text] = {}
        else:
            result[text] = None
    return result


def normalize_service(name: str, service: Optional[Dict[str, Any]], source: Optional[str] = None) -> Dict[str, Any]:
    """
    Brings a raw service entry into the canonical shape used by the merge.

    :param name: The service name, for error messages.
    :param service: The raw service mapping (may be None for an empty entry).
    :param source: The originating file.
    :return: A new, normalised mapping.
    """
    if service is None:
        return {}
    if not isinstance(service, dict):
        raise ValidationError(f"service {name} must be a mapping", source=source)

    result = dict(service)
    for field in ("environment", "labels", "depends_on", "networks"):
        value = result.get(field)
        if isinstance(value, list):
            result[field] = _list_to_mapping(value, field)
    if isinstance(result.get("build"), str):
        result["build"] = {"context": result["build"]}
    if isinstance(result.get("env_file"), str):
        result["env_file"] = [result["env_file"]]
    return result


def _map_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _map_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _keyed_replace(base: List[Any], override: List[Any], key_fn: Callable[[Any], Any]) -> List[Any]:
    merged = list(base)
    positions = {key_fn(entry): index for index, entry in enumerate(merged)}
    for entry in override:
        key = key_fn(entry)
        if key in positions:
            merged[positions[key]] = entry
        else:
            positions[key] = len(merged)
            merged.append(entry)
    return merged


def _union(base: List[Any], override: List[Any]) -> List[Any]:
    merged = list(base)
    for entry in override:
        if entry not in merged:
            merged.append(entry)
    return merged


def merge_field(field: str, base: Any, override: Any) -> Any:
    """
    Merges one service field according to its declared strategy.
    """
    strategy = SERVICE_FIELD_STRATEGIES.get(field, MergeStrategy.OVERWRITE)

    if strategy == MergeStrategy.MAP_MERGE and isinstance(base, dict) and isinstance(override, dict):
        return _map_merge(base, override)
    if strategy == MergeStrategy.KEYED_REPLACE and isinstance(base, list) and isinstance(override, list):
        return _keyed_replace(base, override, KEY_FUNCTIONS[field])
    if strategy == MergeStrategy.UNION and isinstance(base, list) and isinstance(override, list):
        return _union(base, override)
    return override


def merge_services(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merges two normalised service mappings.
    """
    merged = dict(base)
    for field, value in override.items():
        if value is None:
            merged.pop(field, None)
        elif field in merged:
            merged[field] = merge_field(field, merged[field], value)
        else:
            merged[field] = value
    return merged


def merge_documents(documents: List[Dict[str, Any]], sources: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Merges compose documents left to right.

    :param documents: Parsed (and already interpolated) documents.
    :param sources: File names matching the documents, for error messages.
    :return: A single merged document.
    """
    sources = sources or [None] * len(documents)
    result: Dict[str, Any] = {"services": {}, "networks": {}, "volumes": {}}

    for document, source in zip(documents, sources):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise ValidationError("top-level document must be a mapping", source=source)

        for section, value in document.items():
            if section == "services":
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise ValidationError("'services' must be a mapping", source=source)
                for name, service in value.items():
                    normalized = normalize_service(name, service, source)
                    result["services"][name] = merge_services(result["services"].get(name, {}), normalized)
            elif section in ("networks", "volumes"):
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise ValidationError(f"'{section}' must be a mapping", source=source)
                for name, definition in value.items():
                    result[section][name] = _map_merge(result[section].get(name) or {}, definition or {})
            else:
                result[section] = value

    return result
