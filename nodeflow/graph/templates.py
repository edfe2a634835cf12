"""
Template resolution for data flow between nodes.

Node configs reference earlier results with ``{{identifier.property}}``:

    {{scraper.output}}          -> output of node "scraper"
    {{Web Scraper.data}}        -> same, addressed by label
    {{llm.data.usage.tokens}}   -> nested lookup into the stored record
    {{scraper}}                 -> shorthand for {{scraper.output}}

The identifier is looked up as a node id first and as a label second.
Unresolvable references are left verbatim (and logged) so a node can still
run with partially-unresolved input.

Configs are compiled once per run (``VariableResolver.compile_config``) and
rendered per node invocation without re-scanning the strings.
"""

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from nodeflow.graph.node import NodeOutput

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

# Properties that map straight onto NodeOutput fields
WELL_KNOWN_PROPERTIES = frozenset({"output", "data", "error", "status"})

_MISSING = object()


def stringify(value: Any) -> str:
    """Render a resolved value for insertion into a string."""
    if value is None:
        return ""
    if isinstance(value, bool | dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


def _as_record(value: Any) -> dict[str, Any]:
    if isinstance(value, NodeOutput):
        return value.to_dict()
    if isinstance(value, Mapping):
        return dict(value)
    return {"output": value}


def _walk(current: Any, keys: list[str]) -> Any:
    for key in keys:
        if isinstance(current, Mapping):
            current = current.get(key, _MISSING)
        elif isinstance(current, list | tuple) and key.lstrip("-").isdigit():
            index = int(key)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = getattr(current, key, _MISSING)
        if current is _MISSING:
            return _MISSING
    return current


@dataclass(frozen=True)
class TemplateReference:
    """One ``{{...}}`` occurrence."""

    raw: str
    path: str

    @property
    def identifier(self) -> str:
        return self.path.split(".", 1)[0]

    @property
    def property_path(self) -> str | None:
        """Everything after the identifier, or None for a bare reference."""
        parts = self.path.split(".", 1)
        return parts[1] if len(parts) > 1 else None

    def resolve(
        self,
        outputs: Mapping[str, Any],
        alias_to_id: Mapping[str, str] | None = None,
    ) -> str:
        """Resolve against produced outputs. Returns ``raw`` when unresolvable."""
        identifier = self.identifier
        node_id = identifier if identifier in outputs else (alias_to_id or {}).get(identifier)
        if node_id is None or node_id not in outputs:
            logger.warning(
                f"⚠ Node '{identifier}' not found for variable {self.raw} "
                f"(available: {', '.join(outputs) or 'none'})"
            )
            return self.raw

        record = _as_record(outputs[node_id])
        prop = self.property_path
        if prop is None:
            return stringify(record.get("output"))
        if prop in WELL_KNOWN_PROPERTIES:
            return stringify(record.get(prop))

        value = _walk(record, prop.split("."))
        if value is _MISSING:
            logger.warning(f"⚠ Property '{prop}' not found in node '{identifier}' for {self.raw}")
            return self.raw
        return stringify(value)


@dataclass(frozen=True)
class CompiledTemplate:
    """A string split once into literal text and references."""

    source: str
    segments: tuple[str | TemplateReference, ...] = field(default_factory=tuple)

    @classmethod
    def compile(cls, text: str) -> "CompiledTemplate":
        segments: list[str | TemplateReference] = []
        position = 0
        for match in VARIABLE_PATTERN.finditer(text):
            if match.start() > position:
                segments.append(text[position : match.start()])
            segments.append(TemplateReference(raw=match.group(0), path=match.group(1).strip()))
            position = match.end()
        if position < len(text):
            segments.append(text[position:])
        return cls(source=text, segments=tuple(segments))

    @property
    def references(self) -> list[TemplateReference]:
        return [s for s in self.segments if isinstance(s, TemplateReference)]

    @property
    def has_references(self) -> bool:
        return any(isinstance(s, TemplateReference) for s in self.segments)

    def render(
        self,
        outputs: Mapping[str, Any],
        alias_to_id: Mapping[str, str] | None = None,
    ) -> str:
        return "".join(
            s.resolve(outputs, alias_to_id) if isinstance(s, TemplateReference) else s
            for s in self.segments
        )


def extract_variables(template: Any) -> list[str]:
    """All referenced paths in a string, in order of appearance."""
    if not isinstance(template, str):
        return []
    return [m.group(1).strip() for m in VARIABLE_PATTERN.finditer(template)]


def has_variables(template: Any) -> bool:
    return isinstance(template, str) and VARIABLE_PATTERN.search(template) is not None


@dataclass
class VariableCheck:
    """Result of checking a template's references against available outputs."""

    is_valid: bool
    missing_nodes: list[str]
    available_nodes: list[str]
    available_labels: list[str]


def validate_variables(
    template: str,
    outputs: Mapping[str, Any],
    alias_to_id: Mapping[str, str] | None = None,
) -> VariableCheck:
    """Report which referenced nodes have no output (neither by id nor by label)."""
    aliases = alias_to_id or {}
    missing: list[str] = []
    for path in extract_variables(template):
        identifier = path.split(".", 1)[0]
        if identifier in outputs:
            continue
        if aliases.get(identifier) in outputs:
            continue
        missing.append(identifier)
    return VariableCheck(
        is_valid=not missing,
        missing_nodes=missing,
        available_nodes=list(outputs),
        available_labels=list(aliases),
    )


class VariableResolver:
    """
    Resolves ``{{id.property}}`` templates against node outputs.

    Stateless; one instance can be shared by concurrent runs.
    """

    def substitute(
        self,
        template: Any,
        outputs: Mapping[str, Any],
        alias_to_id: Mapping[str, str] | None = None,
    ) -> Any:
        """Resolve every reference in ``template``. Non-strings pass through."""
        if not isinstance(template, str) or not template:
            return template
        return CompiledTemplate.compile(template).render(outputs, alias_to_id)

    def compile_config(self, config: Any) -> Any:
        """
        Pre-compile a node config.

        Strings containing references become CompiledTemplate instances;
        dicts and lists are walked recursively; everything else is kept.
        """
        if isinstance(config, str):
            compiled = CompiledTemplate.compile(config)
            return compiled if compiled.has_references else config
        if isinstance(config, Mapping):
            return {key: self.compile_config(value) for key, value in config.items()}
        if isinstance(config, list | tuple):
            return [self.compile_config(value) for value in config]
        return config

    def render_config(
        self,
        compiled: Any,
        outputs: Mapping[str, Any],
        alias_to_id: Mapping[str, str] | None = None,
    ) -> Any:
        """Materialize a compiled config into plain values."""
        if isinstance(compiled, CompiledTemplate):
            return compiled.render(outputs, alias_to_id)
        if isinstance(compiled, Mapping):
            return {
                key: self.render_config(value, outputs, alias_to_id)
                for key, value in compiled.items()
            }
        if isinstance(compiled, list):
            return [self.render_config(value, outputs, alias_to_id) for value in compiled]
        return compiled

    def resolve_config(
        self,
        config: Any,
        outputs: Mapping[str, Any],
        alias_to_id: Mapping[str, str] | None = None,
    ) -> Any:
        """One-shot compile + render."""
        return self.render_config(self.compile_config(config), outputs, alias_to_id)


# ---------------------------------------------------------------------------
# Label maintenance
# ---------------------------------------------------------------------------


@dataclass
class LabelReference:
    """A template in some node's config that points at a label."""

    node_id: str
    node_label: str
    field: str
    property: str
    reference: str


def _iter_strings(value: Any, field_name: str = ""):
    if isinstance(value, str):
        yield field_name, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from _iter_strings(item, field_name or str(key))
    elif isinstance(value, list | tuple):
        for item in value:
            yield from _iter_strings(item, field_name)


def find_label_references(graph: Any, label: str) -> list[LabelReference]:
    """
    Every template in the graph whose identifier is ``label``.

    The node that owns the label is not searched.
    """
    references = []
    for node in graph.nodes:
        if node.label == label:
            continue
        for field_name, text in _iter_strings(node.config):
            for ref in CompiledTemplate.compile(text).references:
                if ref.identifier != label:
                    continue
                references.append(
                    LabelReference(
                        node_id=node.id,
                        node_label=node.label,
                        field=field_name or "config",
                        property=ref.property_path or "output",
                        reference=ref.raw,
                    )
                )
    return references


def _rewrite(value: Any, old: str, new: str) -> Any:
    if isinstance(value, str):

        def replace(match: re.Match) -> str:
            path = match.group(1).strip()
            identifier, dot, rest = path.partition(".")
            if identifier != old:
                return match.group(0)
            return "{{" + new + dot + rest + "}}"

        return VARIABLE_PATTERN.sub(replace, value)
    if isinstance(value, Mapping):
        return {key: _rewrite(item, old, new) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_rewrite(item, old, new) for item in value]
    return value


def rename_label(graph: Any, node_id: str, new_label: str) -> Any:
    """
    Return a copy of ``graph`` with the node relabeled and every
    ``{{old_label...}}`` reference in other nodes rewritten.

    Raises:
        KeyError: if ``node_id`` is not in the graph
        ValueError: if ``new_label`` is empty or used by another node
    """
    target = graph.get_node(node_id)
    if target is None:
        raise KeyError(f"Node '{node_id}' not found")
    new_label = new_label.strip()
    if not new_label:
        raise ValueError("Label cannot be empty")
    if any(n.label == new_label and n.id != node_id for n in graph.nodes):
        raise ValueError(f"Label '{new_label}' is already used by another node")

    old_label = target.label
    nodes = []
    for node in graph.nodes:
        if node.id == node_id:
            nodes.append(node.model_copy(update={"label": new_label}))
        else:
            config = _rewrite(node.config, old_label, new_label)
            nodes.append(node.model_copy(update={"config": config}))

    rewritten = len(find_label_references(graph, old_label))
    logger.info(f"✏ Renamed '{old_label}' -> '{new_label}' ({rewritten} reference(s) updated)")
    return graph.model_copy(update={"nodes": nodes})
