from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence, Union

Role = Literal["user", "assistant", "system"]
Provider = Literal["openai", "openai-compatible", "anthropic", "gemini"]
NodeType = Literal["OBSERVATION", "MECHANISM", "VALIDATION"]
GhostStatus = Literal["proposed", "pending", "complete", "error"]
NodeAction = Literal["summarize", "suggest-mechanism", "critique", "expand", "questions"]

NODE_TYPES: tuple[NodeType, ...] = ("OBSERVATION", "MECHANISM", "VALIDATION")
PROVIDERS: tuple[Provider, ...] = ("openai", "openai-compatible", "anthropic", "gemini")
NODE_ACTIONS: tuple[NodeAction, ...] = ("summarize", "suggest-mechanism", "critique", "expand", "questions")


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True, slots=True)
class ImagePart:
    base64_data: str
    mime_type: str
    type: Literal["image"] = "image"

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


ContentPart = Union[TextPart, ImagePart]
MessageContent = Union[str, Sequence[ContentPart]]


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    content: MessageContent


@dataclass(frozen=True, slots=True)
class RequestOptions:
    provider: Provider
    model: str
    messages: Sequence[Message]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: Optional[bool] = None


@dataclass(frozen=True, slots=True)
class HttpRequest:
    """Provider-specific wire request produced by an adapter, before authorization."""

    url: str
    body: dict
    headers: dict[str, str]


@dataclass(frozen=True, slots=True)
class Response:
    text: str = ""
    finish_reason: str = "stop"
    model: str = "unknown"


@dataclass(frozen=True, slots=True)
class StreamChunk:
    text: str
    done: bool


@dataclass(frozen=True, slots=True)
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass(frozen=True, slots=True)
class Citation:
    index: int
    title: str
    url: str
    published_date: Optional[str] = None
    snippet: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GraphNode:
    id: str
    type: NodeType
    text: str = ""
    position: Position = field(default_factory=Position)
    summary_title: Optional[str] = None
    grade: Optional[float] = None
    citations: Sequence[Citation] = ()
    source_ghost_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GraphEdge:
    id: str
    source: str
    target: str


@dataclass(frozen=True, slots=True)
class NodeSuggestionContext:
    id: str
    type: NodeType
    grade: int
    content: str


@dataclass(frozen=True, slots=True)
class Direction:
    """A planner proposal of what to investigate next. Never carries generated prose."""

    id: str
    summary_title: str
    suggested_type: NodeType
    search_query: str
    source_node_id: str


@dataclass(frozen=True, slots=True)
class GeneratedStep:
    type: NodeType
    text: str
    summary_title: str
    citations: Sequence[Citation] = ()


@dataclass(frozen=True, slots=True)
class GenerationError:
    message: str
    retryable: bool
    code: str
    provider: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GhostProposal:
    id: str
    parent_id: str
    suggested_type: NodeType
    planner_direction: Direction
    status: GhostStatus = "proposed"
    position: Position = field(default_factory=Position)
    text: Optional[str] = None
    citations: Optional[Sequence[Citation]] = None
    error: Optional[GenerationError] = None


@dataclass(frozen=True, slots=True)
class SearchResult:
    title: str
    url: str
    text: str
    published_date: Optional[str] = None
    author: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SearchResponse:
    results: Sequence[SearchResult] = ()
    error: Optional[str] = None
    status: Optional[int] = None
