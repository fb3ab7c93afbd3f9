# =============================================================================
# Danger Monitor - Shared Schemas
# =============================================================================
# Pydantic models defining the data contracts of the monitor:
#
#   - the OpenAI-compatible chat-completion payloads exchanged with the
#     remote VLM endpoint,
#   - the AnalysisVerdict produced for every analyzed frame,
#   - the PipelineConfig snapshot handed to the orchestrator at start,
#   - the request/response bodies of the local control API.
# =============================================================================

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Chat-completion request
# ---------------------------------------------------------------------------

class ImageUrl(BaseModel):
    """Inline image reference, carried as a ``data:`` URL."""

    url: str


class ContentPart(BaseModel):
    """
    One part of a multi-modal user message.

    Attributes:
        type:      Either ``"text"`` or ``"image_url"``.
        text:      Prompt text for ``"text"`` parts.
        image_url: Inline image for ``"image_url"`` parts.
    """

    type: str
    text: Optional[str] = None
    image_url: Optional[ImageUrl] = None


class ChatMessage(BaseModel):
    role: str
    content: List[ContentPart]


class ChatCompletionRequest(BaseModel):
    """
    Request body POSTed to the inference endpoint.

    Serialized with ``exclude_none=True`` so text parts carry no
    ``image_url`` key and vice versa.
    """

    model: str
    messages: List[ChatMessage]
    max_tokens: int = Field(default=10, ge=1)


# ---------------------------------------------------------------------------
# Chat-completion response
# ---------------------------------------------------------------------------

class ResponseMessage(BaseModel):
    content: Optional[str] = None


class Choice(BaseModel):
    message: Optional[ResponseMessage] = None


class ChatCompletionResponse(BaseModel):
    """
    The subset of the endpoint response the monitor reads.

    Unknown fields (ids, usage, finish reasons) are ignored.
    """

    choices: Optional[List[Choice]] = None

    def first_content(self) -> str:
        """Return the first choice's message content, or ``""`` when absent."""
        if not self.choices:
            return ""
        message = self.choices[0].message
        if message is None or message.content is None:
            return ""
        return message.content


# ---------------------------------------------------------------------------
# Pipeline values
# ---------------------------------------------------------------------------

class AnalysisVerdict(BaseModel):
    """
    Outcome of analyzing one frame.

    At most one of ``raw_answer`` / ``error`` is populated. ``is_danger`` is
    always False when ``error`` is set: a failed analysis never claims danger.

    Attributes:
        is_danger:  True when the model's answer contains ``YES``.
        raw_answer: The uppercased model answer on success.
        error:      Human-readable failure description on error.
    """

    is_danger: bool = False
    raw_answer: Optional[str] = None
    error: Optional[str] = None


class PipelineConfig(BaseModel):
    """
    Snapshot of user settings taken when a monitoring run starts.

    Changes made to the persisted settings while a run is active only take
    effect after the run is restarted.
    """

    api_key: str = ""
    interval_seconds: int = Field(default=3, ge=2)


class LifecycleState(str, Enum):
    """States of the capture-analyze-alert orchestrator."""

    IDLE = "idle"
    CAMERA_WARMING = "camera_warming"
    RUNNING = "running"
    STOPPING = "stopping"


# ---------------------------------------------------------------------------
# Control API
# ---------------------------------------------------------------------------

class StartRequest(BaseModel):
    """
    Body of ``POST /api/v1/monitor/start``.

    Omitted fields fall back to the persisted settings. A supplied API key is
    persisted before the run starts.
    """

    api_key: Optional[str] = None
    interval_seconds: Optional[int] = Field(default=None, ge=2)


class StatusResponse(BaseModel):
    status: str
    state: LifecycleState
    camera_ready: bool
    configured: bool
    enabled: bool


class CaptureResponse(BaseModel):
    saved: bool
    path: Optional[str] = None
