"""Tool definition translation into the model's function-tool wire format.

- build_tool_specs: ToolDefinition list -> `{"type": "function", "function": {...}}` specs
- Duplicate ids are collapsed (last definition wins)
- Optional strict mode for structured function calling:
  additionalProperties false, every property required, optional ones nullable
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional

from ..core.timing_logger import timed
from ..core.types import ToolDefinition

LOGGER = logging.getLogger(__name__)

_STRICT_SCHEMA_CACHE_SIZE = 128


@timed
def build_tool_specs(
    definitions: Optional[Iterable[ToolDefinition]],
    *,
    strict: bool = False,
) -> Optional[List[Dict[str, Any]]]:
    """Translate tool definitions into function-tool specs.

    Schemas are passed through verbatim unless ``strict`` is set. Returns None
    when there are no definitions, so payloads omit the ``tools`` key entirely.
    """
    if not definitions:
        return None

    by_name: Dict[str, ToolDefinition] = {}
    for definition in definitions:
        if definition.id in by_name:
            LOGGER.warning("Duplicate tool id '%s'; keeping the last definition", definition.id)
        by_name[definition.id] = definition
    if not by_name:
        return None

    specs: List[Dict[str, Any]] = []
    for name, definition in by_name.items():
        parameters = definition.parameter_schema
        function: Dict[str, Any] = {
            "name": name,
            "description": definition.description,
            "parameters": _strictify_schema(parameters) if strict else parameters,
        }
        if strict:
            function["strict"] = True
        specs.append({"type": "function", "function": function})
    return specs


def tool_names(specs: Optional[List[Dict[str, Any]]]) -> List[str]:
    """Return the function names offered by ``specs`` in order."""
    names: List[str] = []
    for spec in specs or []:
        function = spec.get("function") if isinstance(spec, dict) else None
        name = function.get("name") if isinstance(function, dict) else None
        if isinstance(name, str) and name:
            names.append(name)
    return names


# -----------------------------------------------------------------------------
# Strict schema rewriting
# -----------------------------------------------------------------------------

@lru_cache(maxsize=_STRICT_SCHEMA_CACHE_SIZE)
def _strictify_schema_cached(serialized_schema: str) -> str:
    strict_schema = _strictify_schema_impl(json.loads(serialized_schema))
    return json.dumps(strict_schema, ensure_ascii=False)


@timed
def _strictify_schema(schema):
    """Return a strict-compatible copy of ``schema``. Non-dict inputs return {}.

    Object nodes (root and nested, including inside ``items`` and
    ``anyOf``/``oneOf`` branches) get ``additionalProperties: false`` and list
    every property as required; properties that were optional become nullable.
    """
    if not isinstance(schema, dict):
        return {}
    canonical = json.dumps(schema, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return json.loads(_strictify_schema_cached(canonical))


def _is_object_node(node: Dict[str, Any]) -> bool:
    node_type = node.get("type")
    return (
        "properties" in node
        or node_type == "object"
        or (isinstance(node_type, list) and "object" in node_type)
    )


def _infer_missing_type(name: str, prop: Dict[str, Any]) -> None:
    if "type" in prop:
        return
    if "properties" in prop:
        prop["type"] = "object"
    elif "items" in prop:
        prop["type"] = "array"
    elif any(key in prop for key in ("anyOf", "oneOf", "allOf")):
        return
    else:
        prop["type"] = "object"
    LOGGER.debug("Inferred type '%s' for untyped property '%s'", prop["type"], name)


def _strictify_schema_impl(schema: Dict[str, Any]) -> Dict[str, Any]:
    if not _is_object_node(schema):
        schema = {
            "type": "object",
            "properties": {"value": schema},
            "required": ["value"],
            "additionalProperties": False,
        }

    pending: List[Any] = [schema]
    while pending:
        node = pending.pop()
        if not isinstance(node, dict):
            continue

        if _is_object_node(node):
            props = node.get("properties")
            if not isinstance(props, dict):
                props = {}
                node["properties"] = props
            declared = {name for name in node.get("required") or [] if isinstance(name, str)}
            node["additionalProperties"] = False
            node["required"] = list(props.keys())

            for name, prop in props.items():
                if not isinstance(prop, dict):
                    continue
                _infer_missing_type(name, prop)
                if name not in declared:
                    prop_type = prop.get("type")
                    if isinstance(prop_type, str) and prop_type != "null":
                        prop["type"] = [prop_type, "null"]
                    elif isinstance(prop_type, list) and "null" not in prop_type:
                        prop["type"] = prop_type + ["null"]
                pending.append(prop)

        items = node.get("items")
        if isinstance(items, dict):
            if not any(key in items for key in ("type", "properties", "items")):
                items["type"] = "object"
            pending.append(items)
        elif isinstance(items, list):
            pending.extend(item for item in items if isinstance(item, dict))

        for key in ("anyOf", "oneOf"):
            branches = node.get(key)
            if not isinstance(branches, list):
                continue
            for branch in branches:
                if isinstance(branch, dict):
                    if not any(k in branch for k in ("type", "properties", "items")):
                        branch["type"] = "object"
                    pending.append(branch)

    return schema
