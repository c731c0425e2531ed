"""
Policy loader for reading, expanding and validating policy documents.

Loads a YAML document, expands ``loop`` declarations into one resource per
item, renders Jinja2 placeholders against ``item`` and document ``vars``
and validates the result into a frozen PolicyDocument. Any problem raises
SchemaError before a host is contacted.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import ValidationError

from ..core.errors import SchemaError
from ..core.models import PolicyDocument

logger = logging.getLogger(__name__)

_TOP_LEVEL_KEYS = {"name", "vars", "resources", "handlers"}


class PolicyLoader:
    """
    Turns policy files into validated PolicyDocuments.

    Expansion happens entirely at load time: the engine only ever sees a
    flat, ordered list of concrete resources.
    """

    def __init__(self):
        """Initialize policy loader."""
        self.env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)

    def load(self, policy_path: str) -> PolicyDocument:
        """
        Load a policy document from a YAML (or JSON) file.

        Args:
            policy_path: Path to the policy file

        Returns:
            PolicyDocument: Expanded and validated document

        Raises:
            SchemaError: If the file is unreadable or the document is invalid
        """
        path = Path(policy_path)
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise SchemaError(f"cannot read policy {policy_path}: {e}")
        except yaml.YAMLError as e:
            raise SchemaError(f"policy {policy_path} is not valid YAML: {e}")

        document = self.load_data(data)
        if document.name is None:
            document = document.model_copy(update={"name": path.stem})
        logger.info("Loaded policy %s with %d resources", document.name, len(document.resources))
        return document

    def load_data(self, data: Any) -> PolicyDocument:
        """Expand and validate an already-parsed policy mapping."""
        if not isinstance(data, dict):
            raise SchemaError("policy document must be a mapping")

        unknown = set(data) - _TOP_LEVEL_KEYS
        if unknown:
            raise SchemaError(f"unknown top-level keys: {', '.join(sorted(unknown))}")

        variables = data.get("vars") or {}
        if not isinstance(variables, dict):
            raise SchemaError("'vars' must be a mapping")

        raw_resources = data.get("resources") or []
        if not isinstance(raw_resources, list):
            raise SchemaError("'resources' must be a list")

        resources: List[Dict[str, Any]] = []
        for index, declaration in enumerate(raw_resources):
            resources.extend(self._expand(declaration, index, variables))

        handlers = self._parse_handlers(data.get("handlers"), variables)

        try:
            return PolicyDocument(
                name=data.get("name"),
                vars=variables,
                resources=resources,
                handlers=handlers,
            )
        except ValidationError as e:
            raise self._schema_error(e, resources)

    def _expand(self, declaration: Any, index: int,
                variables: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Expand one resource declaration into concrete resource mappings."""
        if not isinstance(declaration, dict):
            raise SchemaError(f"resource #{index + 1} must be a mapping")

        declaration = dict(declaration)
        loop = declaration.pop("loop", None)
        label = declaration.get("id", f"#{index + 1}")

        if loop is None:
            return [self._render(declaration, {"vars": variables}, label)]

        if isinstance(loop, str):
            if loop not in variables:
                raise SchemaError(f"loop references undefined variable: {loop}",
                                  resource_id=str(label), kind=declaration.get("kind"))
            items = variables[loop]
        else:
            items = loop

        if not isinstance(items, list):
            raise SchemaError("loop must be a list or the name of a list variable",
                              resource_id=str(label), kind=declaration.get("kind"))

        return [
            self._render(declaration, {"vars": variables, "item": item}, label)
            for item in items
        ]

    def _render(self, value: Any, context: Dict[str, Any], label: Any) -> Any:
        """Render every templated string in a nested structure."""
        if isinstance(value, str):
            if "{{" not in value and "{%" not in value:
                return value
            try:
                return self.env.from_string(value).render(**context)
            except TemplateError as e:
                raise SchemaError(f"cannot render {value!r}: {e}", resource_id=str(label))
        if isinstance(value, dict):
            return {key: self._render(item, context, label) for key, item in value.items()}
        if isinstance(value, list):
            return [self._render(item, context, label) for item in value]
        return value

    def _parse_handlers(self, raw: Any, variables: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Accept handlers as a list of {name, ...} or a mapping of name to body."""
        if raw is None:
            return {}

        handlers: Dict[str, Dict[str, Any]] = {}
        if isinstance(raw, dict):
            for name, body in raw.items():
                if not isinstance(body, dict):
                    raise SchemaError(f"handler {name} must be a mapping")
                handlers[name] = self._render(dict(body, name=body.get("name", name)),
                                              {"vars": variables}, name)
        elif isinstance(raw, list):
            for body in raw:
                if not isinstance(body, dict) or "name" not in body:
                    raise SchemaError("each handler must be a mapping with a 'name'")
                if body["name"] in handlers:
                    raise SchemaError(f"duplicate handler name: {body['name']}")
                handlers[body["name"]] = self._render(dict(body), {"vars": variables}, body["name"])
        else:
            raise SchemaError("'handlers' must be a list or a mapping")
        return handlers

    def _schema_error(self, error: ValidationError,
                      resources: List[Dict[str, Any]]) -> SchemaError:
        """Convert a pydantic error into a SchemaError naming the resource."""
        details = error.errors()
        first = details[0]
        loc = list(first.get("loc", ()))

        resource_id: Optional[str] = None
        kind: Optional[str] = None
        if len(loc) >= 2 and loc[0] == "resources" and isinstance(loc[1], int):
            raw = resources[loc[1]] if loc[1] < len(resources) else {}
            resource_id = raw.get("id") or f"#{loc[1] + 1}"
            kind = raw.get("kind")
            # Drop the index and the union tag from the location
            loc = [part for part in loc[2:] if part != kind]

        where = ".".join(str(part) for part in loc)
        message = f"{where}: {first['msg']}" if where else first["msg"]
        if len(details) > 1:
            message += f" (and {len(details) - 1} more)"
        return SchemaError(message, resource_id=resource_id, kind=kind)
