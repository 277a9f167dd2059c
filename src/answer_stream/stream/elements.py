"""Stream element variants and citation payloads.

Every element that can appear on an answer stream is one of the frozen models
below, discriminated by its ``type`` field. Raw payloads coming off a
transport go through :func:`validate_element` before they reach the assembler.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from answer_stream.errors import MalformedElement


def _coerce_node_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


NodeId = Annotated[str, BeforeValidator(_coerce_node_id)]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ArticleSource(_Frozen):
    article_id: str
    title: str
    url: str | None = None
    source_domain: str | None = None
    published_at: str | None = None


class WikipediaSource(_Frozen):
    page_id: str
    title: str
    url: str | None = None
    section: str | None = None


class FinancialDataSource(_Frozen):
    symbol: str
    metric: str
    value: float | str
    as_of: str | None = None


class WebPageSource(_Frozen):
    url: str
    title: str | None = None
    snippet: str | None = None


class StorySource(_Frozen):
    story_id: str
    title: str
    summary: str | None = None


class GenericSource(_Frozen):
    title: str
    url: str | None = None
    text: str | None = None


SOURCE_FIELDS = ("article", "wikipedia", "financial", "web_page", "story", "generic")


class Citation(_Frozen):
    """A reference backing a claim in an answer.

    Exactly one of the source fields is populated. ``offset`` is the content
    length at the moment the citation arrived on the stream.
    """

    ref_id: str = Field(min_length=1)
    article: ArticleSource | None = None
    wikipedia: WikipediaSource | None = None
    financial: FinancialDataSource | None = None
    web_page: WebPageSource | None = None
    story: StorySource | None = None
    generic: GenericSource | None = None
    offset: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "Citation":
        populated = [name for name in SOURCE_FIELDS if getattr(self, name) is not None]
        if len(populated) != 1:
            raise ValueError(
                f"citation {self.ref_id!r} must have exactly one source, got {populated or 'none'}"
            )
        return self

    @property
    def source_kind(self) -> str:
        return next(name for name in SOURCE_FIELDS if getattr(self, name) is not None)

    @property
    def source(self) -> BaseModel:
        return getattr(self, self.source_kind)

    @property
    def title(self) -> str | None:
        return getattr(self.source, "title", None)


class ResponseChunk(_Frozen):
    type: Literal["response_chunk"] = "response_chunk"
    text: str


class CitationElement(_Frozen):
    type: Literal["citation"] = "citation"
    citation: Citation


class ErrorElement(_Frozen):
    type: Literal["error"] = "error"
    message: str
    fatal: bool


class ThreadMetadata(_Frozen):
    type: Literal["thread_metadata"] = "thread_metadata"
    patch: dict[str, Any]


class TraceMetadata(_Frozen):
    type: Literal["trace_metadata"] = "trace_metadata"
    patch: dict[str, Any]


class ThinkingBranch(_Frozen):
    type: Literal["thinking_branch"] = "thinking_branch"
    node_id: NodeId
    parent_id: NodeId | None = None
    label: str = ""


class ThinkingLeaf(_Frozen):
    type: Literal["thinking_leaf"] = "thinking_leaf"
    node_id: NodeId
    parent_id: NodeId | None = None
    label: str = ""


class ThinkingDuration(_Frozen):
    type: Literal["thinking_duration"] = "thinking_duration"
    node_id: NodeId
    millis: int = Field(ge=0)


class EndOfStream(_Frozen):
    type: Literal["end"] = "end"


StreamElement = Annotated[
    Union[
        ResponseChunk,
        CitationElement,
        ErrorElement,
        ThreadMetadata,
        TraceMetadata,
        ThinkingBranch,
        ThinkingLeaf,
        ThinkingDuration,
        EndOfStream,
    ],
    Field(discriminator="type"),
]

ThinkingElement = Union[ThinkingBranch, ThinkingLeaf, ThinkingDuration]

ELEMENT_TYPES = (
    ResponseChunk,
    CitationElement,
    ErrorElement,
    ThreadMetadata,
    TraceMetadata,
    ThinkingBranch,
    ThinkingLeaf,
    ThinkingDuration,
    EndOfStream,
)

_ELEMENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(StreamElement)


def validate_element(raw: Any) -> StreamElement:
    """Return a typed element for ``raw`` or raise :class:`MalformedElement`."""
    if isinstance(raw, ELEMENT_TYPES):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedElement(f"element must be a mapping, got {type(raw).__name__}", raw=raw)
    try:
        return _ELEMENT_ADAPTER.validate_python(dict(raw))
    except ValidationError as exc:
        kind = raw.get("type", "<missing>")
        raise MalformedElement(
            f"malformed {kind} element: {exc.error_count()} validation error(s)", raw=raw
        ) from exc
