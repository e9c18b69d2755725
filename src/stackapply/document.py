"""Loads desired-state documents (YAML or JSON) into a ResourceModel."""

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from stackapply.errors import DocumentError
from stackapply.models import Ref
from stackapply.resource_model import ResourceModel

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1


@dataclass(frozen=True)
class Var:
    """Placeholder for a document variable, substituted at load time."""

    name: str


# ------------------------------------------------------------------ YAML loader
# !Ref and !Var become marker objects; duplicate keys are rejected instead of
# silently keeping the last one.

class _DocumentLoader(yaml.SafeLoader):
    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key {key!r}", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _ref_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Ref:
    return Ref(str(loader.construct_scalar(node)))


def _var_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Var:
    return Var(str(loader.construct_scalar(node)))


_DocumentLoader.add_constructor("!Ref", _ref_constructor)
_DocumentLoader.add_constructor("!Var", _var_constructor)


def _read(path: Path) -> Any:
    try:
        text = path.read_text()
    except OSError as exc:
        raise DocumentError(str(path), str(exc)) from exc
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.load(text, Loader=_DocumentLoader)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise DocumentError(str(path), str(exc)) from exc


def _markers(value: Any) -> Any:
    """Turn the JSON spellings {"Ref": id} and {"Var": name} into marker objects."""
    if isinstance(value, dict):
        if len(value) == 1 and isinstance(value.get("Ref"), str):
            return Ref(value["Ref"])
        if len(value) == 1 and isinstance(value.get("Var"), str):
            return Var(value["Var"])
        return {k: _markers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_markers(v) for v in value]
    return value


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge `override` into a copy of `base`; nested mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _lookup(variables: Mapping[str, Any], name: str) -> Any:
    value: Any = variables
    for part in name.split("."):
        if not isinstance(value, Mapping) or part not in value:
            raise KeyError(name)
        value = value[part]
    return value


class _VariableCycle(Exception):
    def __init__(self, names: list[str]):
        self.names = names
        super().__init__(" -> ".join(names))


def _nest_dotted(variables: Mapping[str, Any]) -> dict[str, Any]:
    """Expand dotted keys ("admin.cidr") into nested mappings."""
    nested: dict[str, Any] = {}
    for key, value in variables.items():
        *parents, leaf = str(key).split(".")
        target = nested
        for part in parents:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[leaf] = value
    return nested


def _substitute(value: Any, variables: Mapping[str, Any], expanding: tuple[str, ...] = ()) -> Any:
    if isinstance(value, Var):
        if value.name in expanding:
            raise _VariableCycle([*expanding, value.name])
        resolved = _markers(_lookup(variables, value.name))
        return _substitute(resolved, variables, (*expanding, value.name))
    if isinstance(value, dict):
        return {k: _substitute(v, variables, expanding) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, variables, expanding) for v in value]
    return value


def load_variables(path: str | Path) -> dict[str, Any]:
    """Read an overlay file: either a bare mapping or a document with a `variables` key."""
    path = Path(path)
    doc = _read(path)
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise DocumentError(str(path), "overlay must be a mapping")
    variables = doc.get("variables", doc)
    if not isinstance(variables, dict):
        raise DocumentError(str(path), "variables must be a mapping")
    return variables


def load_document(
    path: str | Path,
    overlays: Iterable[str | Path] = (),
    variables: Mapping[str, Any] | None = None,
) -> ResourceModel:
    """Parse a desired-state document into a ResourceModel.

    Variables come from the document's `variables` block, then each overlay
    file in order, then `variables`; later sources win key by key.
    """
    path = Path(path)
    doc = _read(path)
    if not isinstance(doc, dict):
        raise DocumentError(str(path), "top level must be a mapping")

    version = doc.get("version", DOCUMENT_VERSION)
    if version != DOCUMENT_VERSION:
        raise DocumentError(str(path), f"unsupported document version {version!r}")

    merged = doc.get("variables") or {}
    if not isinstance(merged, dict):
        raise DocumentError(str(path), "variables must be a mapping")
    for overlay in overlays:
        merged = deep_merge(merged, load_variables(overlay))
        logger.debug("Applied variable overlay %s", overlay)
    if variables:
        merged = deep_merge(merged, _nest_dotted(variables))

    resources = doc.get("resources")
    if not isinstance(resources, dict):
        raise DocumentError(str(path), "resources must be a mapping")

    model = ResourceModel()
    with model.building():
        for logical_id, decl in resources.items():
            if not isinstance(decl, dict) or not isinstance(decl.get("kind"), str):
                raise DocumentError(str(path), f"resource {logical_id!r} needs a kind")
            properties = decl.get("properties") or {}
            depends_on = decl.get("depends_on") or []
            if not isinstance(properties, dict):
                raise DocumentError(str(path), f"resource {logical_id!r} properties must be a mapping")
            if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
                raise DocumentError(str(path), f"resource {logical_id!r} depends_on must be a list")
            try:
                properties = _substitute(_markers(properties), merged)
            except KeyError as exc:
                raise DocumentError(
                    str(path), f"resource {logical_id!r} uses undefined variable {exc.args[0]!r}"
                ) from None
            except _VariableCycle as exc:
                raise DocumentError(
                    str(path), f"resource {logical_id!r} uses self-referencing variable {exc}"
                ) from None
            model.declare(decl["kind"], str(logical_id), properties, depends_on=depends_on)

    logger.info("Loaded %d resources from %s", len(model), path)
    return model
