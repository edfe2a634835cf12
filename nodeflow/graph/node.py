"""
Node Protocol - The typed units of work in a workflow graph.

A node has:
- A stable id and a unique, human-readable label (used as template alias)
- A type, which selects its processor and its typed config model
- A config mapping whose string values may contain {{id.property}} templates

Processors are external collaborators. The engine only relies on the
NodeProcessor contract: ``execute(resolved_config, upstream_outputs)``
returning an output (or raising on failure).
"""

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Annotated, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]


class NodeType(StrEnum):
    """Node types known to the engine."""

    DATA_INPUT = "dataInput"
    WEB_SCRAPING = "webScraping"
    LLM_TASK = "llmTask"
    EMBEDDING_GENERATOR = "embeddingGenerator"
    SIMILARITY_SEARCH = "similaritySearch"
    STRUCTURED_OUTPUT = "structuredOutput"
    DATA_OUTPUT = "dataOutput"
    DATABASE = "database"
    SLACK = "slack"
    DISCORD = "discord"
    GMAIL = "gmail"

    @classmethod
    def parse(cls, value: str) -> "NodeType | None":
        """Return the enum member for ``value``, or None for unknown types."""
        try:
            return cls(value)
        except ValueError:
            return None


class NodeRole(StrEnum):
    """Functional category of a node, used for structural validation."""

    INPUT = "input"
    OUTPUT = "output"
    PROCESSING = "processing"


def node_role(node_type: str) -> NodeRole:
    """Role of a node type. Unknown types are processing nodes."""
    if node_type == NodeType.DATA_INPUT:
        return NodeRole.INPUT
    if node_type == NodeType.DATA_OUTPUT:
        return NodeRole.OUTPUT
    return NodeRole.PROCESSING


# ---------------------------------------------------------------------------
# Typed config models (one per node type)
# ---------------------------------------------------------------------------


class NodeConfig(BaseModel):
    """Base for per-type configs. Unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class DataInputConfig(NodeConfig):
    data_type: str = Field(default="text", alias="dataType")
    default_value: Any = Field(default=None, alias="defaultValue")


class WebScrapingConfig(NodeConfig):
    url: NonEmptyStr
    formats: list[str] = Field(default_factory=lambda: ["markdown"])


class LLMTaskConfig(NodeConfig):
    prompt: NonEmptyStr
    model: NonEmptyStr
    temperature: float = 0.7
    max_tokens: int | None = Field(default=None, alias="maxTokens")


class EmbeddingGeneratorConfig(NodeConfig):
    model: str = "text-embedding-ada-002"


class SimilaritySearchConfig(NodeConfig):
    vector_store: NonEmptyStr = Field(alias="vectorStore")
    top_k: int = Field(default=5, alias="topK")
    threshold: float | None = None


class StructuredOutputConfig(NodeConfig):
    output_schema: dict[str, Any] | NonEmptyStr = Field(alias="schema")


class DataOutputConfig(NodeConfig):
    format: str = "text"


class DatabaseConfig(NodeConfig):
    operation: NonEmptyStr


class SlackConfig(NodeConfig):
    operation: NonEmptyStr


class DiscordConfig(NodeConfig):
    operation: NonEmptyStr


class GmailConfig(NodeConfig):
    operation: NonEmptyStr


NODE_CONFIG_MODELS: dict[NodeType, type[NodeConfig]] = {
    NodeType.DATA_INPUT: DataInputConfig,
    NodeType.WEB_SCRAPING: WebScrapingConfig,
    NodeType.LLM_TASK: LLMTaskConfig,
    NodeType.EMBEDDING_GENERATOR: EmbeddingGeneratorConfig,
    NodeType.SIMILARITY_SEARCH: SimilaritySearchConfig,
    NodeType.STRUCTURED_OUTPUT: StructuredOutputConfig,
    NodeType.DATA_OUTPUT: DataOutputConfig,
    NodeType.DATABASE: DatabaseConfig,
    NodeType.SLACK: SlackConfig,
    NodeType.DISCORD: DiscordConfig,
    NodeType.GMAIL: GmailConfig,
}


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


@dataclass
class NodeOutput:
    """What a finished node exposes to templates and downstream processors."""

    node_id: str
    output: Any = None
    data: Any = None
    error: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_result(cls, node_id: str, result: Any) -> "NodeOutput":
        """
        Normalize a processor return value.

        Accepts a NodeOutput, a mapping with an ``output`` key (``data``
        defaults to the whole mapping), or any other value, which becomes
        the output. A mapping that reports ``success: False``, or carries an
        ``error`` without an ``output``, is a returned failure.

        Raises:
            ProcessorError: if the result reports a failure
        """
        if isinstance(result, NodeOutput):
            return cls(node_id=node_id, output=result.output, data=result.data, status="success")

        if isinstance(result, Mapping):
            failed = result.get("success") is False or (
                result.get("error") and "output" not in result
            )
            if failed:
                raise ProcessorError(str(result.get("error") or "Processor reported failure"))
            if "output" in result:
                data = result["data"] if "data" in result else dict(result)
                return cls(node_id=node_id, output=result["output"], data=data, status="success")

        return cls(node_id=node_id, output=result, data=result, status="success")


# ---------------------------------------------------------------------------
# Processor contract
# ---------------------------------------------------------------------------


class ProcessorError(Exception):
    """Raised (or reported) when a node's processor fails."""

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.node_id = node_id


class ProcessorNotFoundError(LookupError):
    """Raised when no processor is registered for a node type."""


@runtime_checkable
class NodeProcessor(Protocol):
    """
    Contract every node-type processor satisfies.

    Processors that can be interrupted safely set ``supports_cancellation``
    to True; the engine then cancels them when a run times out.
    """

    async def execute(self, config: dict[str, Any], upstream: dict[str, NodeOutput]) -> Any: ...


class FunctionProcessor:
    """Adapts a plain (sync or async) callable to the NodeProcessor contract."""

    def __init__(
        self,
        func: Callable[[dict[str, Any], dict[str, NodeOutput]], Any],
        supports_cancellation: bool = False,
    ):
        self.func = func
        self.supports_cancellation = supports_cancellation

    async def execute(self, config: dict[str, Any], upstream: dict[str, NodeOutput]) -> Any:
        result = self.func(config, upstream)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionProcessor({getattr(self.func, '__name__', self.func)!r})"


# Predicate over the outputs of a node's successful predecessors
NodeCondition = Callable[[dict[str, NodeOutput]], bool | Awaitable[bool]]


class NodeSpec(BaseModel):
    """
    A node in the workflow graph.

    Examples:
        NodeSpec(id="in", type="dataInput", label="Input")

        NodeSpec(
            id="summarize",
            type="llmTask",
            label="Summarizer",
            config={"model": "gpt-4o-mini", "prompt": "Summarize: {{Scraper.output}}"},
        )

    Editor payloads that nest ``type``/``label``/``config`` under ``data``
    are accepted as well.
    """

    id: NonEmptyStr
    type: NonEmptyStr
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    condition: NodeCondition | None = Field(
        default=None,
        exclude=True,
        description="Conditional mode only: run the node only if this returns True",
    )

    model_config = ConfigDict(extra="allow", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _lift_editor_data(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        data = values.pop("data", None)
        if isinstance(data, dict):
            for key in ("type", "label", "config"):
                if key in data:
                    values[key] = data[key]
        label = values.get("label")
        values["label"] = label.strip() if isinstance(label, str) and label.strip() else values.get(
            "id", ""
        )
        return values

    @property
    def node_type(self) -> NodeType | None:
        return NodeType.parse(self.type)

    @property
    def role(self) -> NodeRole:
        return node_role(self.type)

    def typed_config(self) -> NodeConfig:
        """
        Validate ``config`` against this node type's config model.

        Raises:
            pydantic.ValidationError: if required keys are missing or empty
            KeyError: if the node type is unknown
        """
        node_type = self.node_type
        if node_type is None:
            raise KeyError(f"Unknown node type: {self.type}")
        return NODE_CONFIG_MODELS[node_type].model_validate(self.config)
