"""
Node-type registry.

Answers two questions for the rest of the core:
- how well is a node type supported (supported / deprecated / experimental /
  unsupported), and what could be used instead
- which processor runs nodes of a given type

Every NodeType member is supported out of the box. Extra types can be
registered at runtime (e.g. plugin processors).
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from nodeflow.graph.node import (
    FunctionProcessor,
    NodeOutput,
    NodeProcessor,
    NodeType,
    ProcessorNotFoundError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "NodeTypeDiagnostic",
    "NodeTypeRegistry",
    "ProcessorNotFoundError",
    "SupportStatus",
]


class SupportStatus(StrEnum):
    SUPPORTED = "supported"
    DEPRECATED = "deprecated"
    EXPERIMENTAL = "experimental"
    UNSUPPORTED = "unsupported"


# Keyword pattern -> types worth suggesting for an unknown or deprecated type
SIMILAR_TYPE_PATTERNS: list[tuple[re.Pattern, list[str]]] = [
    (re.compile(r"data", re.I), [NodeType.DATA_INPUT, NodeType.DATA_OUTPUT]),
    (re.compile(r"web|scrap|extract", re.I), [NodeType.WEB_SCRAPING]),
    (re.compile(r"llm|ai|gpt|openai", re.I), [NodeType.LLM_TASK]),
    (re.compile(r"db|database|sql", re.I), [NodeType.DATABASE]),
    (re.compile(r"slack|message|notification|chat", re.I), [NodeType.SLACK]),
    (re.compile(r"discord|gaming|community|server", re.I), [NodeType.DISCORD]),
    (re.compile(r"mail|email|gmail", re.I), [NodeType.GMAIL]),
    (
        re.compile(r"embed|vector", re.I),
        [NodeType.EMBEDDING_GENERATOR, NodeType.SIMILARITY_SEARCH],
    ),
    (re.compile(r"struct|schema|json", re.I), [NodeType.STRUCTURED_OUTPUT]),
]


@dataclass
class NodeTypeDiagnostic:
    """What the registry has to say about one node type."""

    node_type: str
    status: SupportStatus
    similar_types: list[str] = field(default_factory=list)
    warning: str | None = None
    suggestion: str | None = None

    @property
    def severity(self) -> str:
        if self.status == SupportStatus.UNSUPPORTED:
            return "error"
        if self.status == SupportStatus.SUPPORTED:
            return "info"
        return "warning"


class NodeTypeRegistry:
    """
    Support levels and processors per node type.

    Constructed explicitly and passed to the validator and the engine, so
    tests can use isolated registries.
    """

    def __init__(self, default_processor: NodeProcessor | None = None):
        self._supported: set[str] = {str(t) for t in NodeType}
        self._deprecated: set[str] = set()
        self._experimental: set[str] = set()
        self._processors: dict[str, NodeProcessor] = {}
        # Used for types without a registered processor (dry runs)
        self.default_processor = default_processor

    # === Support status ===

    def register_type(
        self,
        node_type: str,
        processor: NodeProcessor | None = None,
        deprecated: bool = False,
        experimental: bool = False,
    ) -> None:
        """Make ``node_type`` known, optionally with its processor."""
        self._supported.add(str(node_type))
        if deprecated:
            self._deprecated.add(str(node_type))
        if experimental:
            self._experimental.add(str(node_type))
        if processor is not None:
            self._processors[str(node_type)] = processor

    def mark_deprecated(self, node_type: str) -> None:
        self._deprecated.add(str(node_type))

    def mark_experimental(self, node_type: str) -> None:
        self._experimental.add(str(node_type))

    def is_supported(self, node_type: str) -> bool:
        return str(node_type) in self._supported

    def get_status(self, node_type: str) -> SupportStatus:
        if not self.is_supported(node_type):
            return SupportStatus.UNSUPPORTED
        if node_type in self._deprecated:
            return SupportStatus.DEPRECATED
        if node_type in self._experimental:
            return SupportStatus.EXPERIMENTAL
        return SupportStatus.SUPPORTED

    def get_supported_types(self) -> list[str]:
        return sorted(self._supported)

    def get_similar_types(self, node_type: str) -> list[str]:
        """Supported types whose keywords match ``node_type``."""
        similar: list[str] = []
        for pattern, candidates in SIMILAR_TYPE_PATTERNS:
            if not pattern.search(node_type):
                continue
            for candidate in candidates:
                candidate = str(candidate)
                if candidate != node_type and candidate in self._supported:
                    if candidate not in similar:
                        similar.append(candidate)
        return similar

    def diagnose(self, node_type: str) -> NodeTypeDiagnostic:
        status = self.get_status(node_type)
        similar = self.get_similar_types(node_type)
        diagnostic = NodeTypeDiagnostic(node_type=node_type, status=status, similar_types=similar)

        if status == SupportStatus.UNSUPPORTED:
            diagnostic.warning = f"Node type '{node_type}' is not supported"
            diagnostic.suggestion = (
                f"Consider using: {', '.join(similar)}"
                if similar
                else "Check documentation for supported types"
            )
        elif status == SupportStatus.DEPRECATED:
            diagnostic.warning = f"Node type '{node_type}' is deprecated"
            diagnostic.suggestion = (
                f"Migrate to: {', '.join(similar)}" if similar else "Check migration documentation"
            )
        elif status == SupportStatus.EXPERIMENTAL:
            diagnostic.warning = f"Node type '{node_type}' is experimental"
            diagnostic.suggestion = "Use with caution - API may change"
        return diagnostic

    # === Processors ===

    def register_processor(self, node_type: NodeType | str, processor: NodeProcessor) -> None:
        """
        Register the processor that runs ``node_type`` nodes.

        Raises:
            ValueError: if the type is unknown (use register_type for new types)
        """
        if not self.is_supported(node_type):
            raise ValueError(
                f"Unknown node type '{node_type}'. Register it with register_type() first."
            )
        self._processors[str(node_type)] = processor
        logger.debug(f"Registered processor for '{node_type}': {processor!r}")

    def register_function(
        self,
        node_type: NodeType | str,
        func: Callable[[dict[str, Any], dict[str, NodeOutput]], Any],
        supports_cancellation: bool = False,
    ) -> None:
        """Register a plain (sync or async) function as a processor."""
        self.register_processor(
            node_type, FunctionProcessor(func, supports_cancellation=supports_cancellation)
        )

    def has_processor(self, node_type: str) -> bool:
        return node_type in self._processors or self.default_processor is not None

    def get_processor(self, node_type: str) -> NodeProcessor:
        """
        Raises:
            ProcessorNotFoundError: if nothing can run ``node_type``
        """
        processor = self._processors.get(node_type, self.default_processor)
        if processor is None:
            raise ProcessorNotFoundError(f"No processor registered for node type '{node_type}'")
        return processor
