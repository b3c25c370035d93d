"""In-process template processor.

Parameters are read from every YAML file in the parameter directory and merged
in file name order. Templates are YAML files whose text may reference
parameters with `${name}`, `${nested.name}` or `${name:=default}`; `$${` is
an escaped literal `${`.

```python
from gitops_local.template import render

docs = render.render_directory(Path("templates"), Path("params"))
for doc in docs:
    print(f"Rendered {doc['kind']} {doc['metadata']['name']}")
```

Output order follows the sorted template file names and the document order
within each file, so identical inputs always render identically.
"""

import json
import logging
from pathlib import Path
import re
from typing import Any

import yaml

from gitops_local.exceptions import RenderError

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "load_parameters",
    "substitute",
    "render_directory",
]

YAML_SUFFIXES = {".yaml", ".yml"}

_VARIABLE = re.compile(
    r"\$(?P<escape>\$)?\{(?P<name>[A-Za-z_][A-Za-z0-9_.-]*)(?::=(?P<default>[^}]*))?\}"
)
_MISSING = object()


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries. Lists are replaced entirely."""
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


def _yaml_files(directory: Path) -> list[Path]:
    # Skip hidden directories such as the .git directory of a checkout
    return sorted(
        path
        for path in directory.rglob("*")
        if path.is_file()
        and path.suffix in YAML_SUFFIXES
        and not any(part.startswith(".") for part in path.relative_to(directory).parts)
    )


def load_parameters(parameter_dir: Path) -> dict[str, Any]:
    """Merge every parameter file into a single dictionary."""
    params: dict[str, Any] = {}
    for path in _yaml_files(parameter_dir):
        try:
            docs = list(yaml.safe_load_all(path.read_text()))
        except yaml.YAMLError as err:
            raise RenderError(f"Parameter file {path.name} is not valid yaml: {err}") from err
        for doc in docs:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise RenderError(
                    f"Parameter file {path.name} expected a dictionary, found {type(doc).__name__}"
                )
            params = _deep_merge(params, doc)
    _LOGGER.debug("Loaded %d parameters from %s", len(params), parameter_dir)
    return params


def _lookup(params: dict[str, Any], name: str) -> Any:
    value: Any = params
    for part in name.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def substitute(text: str, params: dict[str, Any], source: str = "template") -> str:
    """Replace parameter references in the template text."""

    def replace(match: re.Match[str]) -> str:
        name = match.group("name")
        if match.group("escape"):
            return match.group(0)[1:]
        value = _lookup(params, name)
        if value is _MISSING:
            if (default := match.group("default")) is not None:
                return default
            raise RenderError(f"{source}: parameter '{name}' is not defined")
        return _format_value(value)

    return _VARIABLE.sub(replace, text)


def _expand(doc: Any, source: str) -> list[dict[str, Any]]:
    if not isinstance(doc, dict):
        raise RenderError(f"{source}: expected a resource, found {type(doc).__name__}")
    if doc.get("kind") == "List":
        items = doc.get("items") or []
        return [item for entry in items for item in _expand(entry, source)]
    if not doc.get("kind"):
        raise RenderError(f"{source}: resource missing kind: {doc}")
    if not (doc.get("metadata") or {}).get("name"):
        raise RenderError(f"{source}: resource missing metadata.name: {doc}")
    return [doc]


def render_directory(template_dir: Path, parameter_dir: Path) -> list[dict[str, Any]]:
    """Render every template file with the merged parameters."""
    params = load_parameters(parameter_dir)
    docs: list[dict[str, Any]] = []
    for path in _yaml_files(template_dir):
        source = str(path.relative_to(template_dir))
        content = substitute(path.read_text(), params, source)
        try:
            loaded = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise RenderError(f"{source}: rendered template is not valid yaml: {err}") from err
        for doc in loaded:
            if doc is None:
                continue
            docs.extend(_expand(doc, source))
    _LOGGER.debug("Rendered %d resources from %s", len(docs), template_dir)
    return docs
