"""
Built-in processors.

Enough to run a graph against a test input without any external service:
data input, data output, and a passthrough that stands in for every other
node type during dry runs.
"""

import logging
from typing import Any

from nodeflow.graph.node import NodeOutput, NodeType
from nodeflow.runtime.node_registry import NodeTypeRegistry

logger = logging.getLogger(__name__)


def _last_output(upstream: dict[str, NodeOutput]) -> Any:
    if not upstream:
        return ""
    last = list(upstream.values())[-1]
    return last.output if last.output is not None else ""


class DataInputProcessor:
    """Emits the run's test input, or the node's ``defaultValue``."""

    supports_cancellation = True

    async def execute(self, config: dict[str, Any], upstream: dict[str, NodeOutput]) -> dict:
        value = config.get("input")
        if value in (None, ""):
            value = config.get("defaultValue")
        if value is None:
            value = ""
        return {"output": value, "data": {"input": value, "type": NodeType.DATA_INPUT.value}}


class DataOutputProcessor:
    """Collects the output of the last upstream node."""

    supports_cancellation = True

    async def execute(self, config: dict[str, Any], upstream: dict[str, NodeOutput]) -> dict:
        value = _last_output(upstream)
        return {
            "output": value,
            "data": {
                "input": value,
                "format": config.get("format", "text"),
                "type": NodeType.DATA_OUTPUT.value,
            },
        }


class PassthroughProcessor:
    """
    Forwards the last upstream output unchanged.

    ``data`` carries the resolved config and every upstream output so a dry
    run shows exactly what a real processor would have received.
    """

    supports_cancellation = True

    async def execute(self, config: dict[str, Any], upstream: dict[str, NodeOutput]) -> dict:
        value = _last_output(upstream)
        logger.debug(f"Passthrough with config keys {sorted(config)}")
        return {
            "output": value,
            "data": {
                "config": config,
                "upstream": {node_id: out.output for node_id, out in upstream.items()},
                "fallback_used": True,
            },
        }


def register_builtin_processors(
    registry: NodeTypeRegistry, passthrough_default: bool = False
) -> NodeTypeRegistry:
    """
    Register the data input/output processors on ``registry``.

    With ``passthrough_default`` every other type falls back to the
    passthrough processor.
    """
    registry.register_processor(NodeType.DATA_INPUT, DataInputProcessor())
    registry.register_processor(NodeType.DATA_OUTPUT, DataOutputProcessor())
    if passthrough_default:
        registry.default_processor = PassthroughProcessor()
    return registry
