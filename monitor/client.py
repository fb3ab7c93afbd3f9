# =============================================================================
# Danger Monitor - Danger Analysis HTTP Client
# =============================================================================
# Provides the AnalysisClient class that base64-encodes a JPEG frame, POSTs
# it with a fixed safety prompt to an OpenAI-compatible chat-completion
# endpoint, and turns the model's bounded free-text answer into an
# AnalysisVerdict. Host names are resolved system-first with a DoH fallback.
#
# analyze() never raises: every failure becomes a verdict with ``error`` set
# and ``is_danger`` False, so a broken network can never fake a danger alarm
# nor kill the analysis loop.
# =============================================================================

import base64
import logging
import time
from typing import Optional
from urllib.parse import urlsplit

import requests
from urllib3.exceptions import NameResolutionError

from monitor.resolver import FallbackResolver, ResolvingAdapter
from shared.schemas import (
    AnalysisVerdict,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ContentPart,
    ImageUrl,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "google/gemini-2.0-flash-001"

SAFETY_PROMPT = (
    "You are a safety assistant. Look at this image from a first-person "
    "perspective. Is there any IMMEDIATE physical danger (e.g., approaching "
    "cars, deep holes, aggressive dogs, fire)? Answer with only 'YES' or 'NO'."
)


def _resolution_failure(exc: BaseException) -> Optional[NameResolutionError]:
    """Walk the exception chain looking for a name-resolution failure."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, NameResolutionError):
            return exc
        seen.add(id(exc))
        reason = getattr(exc, "reason", None)
        if isinstance(reason, BaseException):
            exc = reason
        elif exc.args and isinstance(exc.args[0], BaseException):
            exc = exc.args[0]
        else:
            exc = exc.__cause__ or exc.__context__
    return None


class AnalysisClient:
    """
    HTTP client asking a remote VLM whether a frame shows immediate danger.

    A new instance is created for every monitoring run; the API key is fixed
    for the lifetime of the instance.

    Args:
        api_key:    Bearer token for the inference endpoint.
        api_url:    Chat-completion endpoint URL.
        model:      Model identifier sent in the request body.
        max_tokens: Answer length cap (the prompt asks for one word).
        timeout:    Connect and read timeout in seconds.
        resolver:   Name resolver; system DNS with DoH fallback by default.
        session:    Pre-built requests session (tests).
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 10,
        timeout: float = 30.0,
        resolver: Optional[FallbackResolver] = None,
        session: Optional[requests.Session] = None,
    ):
        self._api_url = api_url
        self._host = urlsplit(api_url).hostname or api_url
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = (timeout, timeout)

        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )
        adapter = ResolvingAdapter(resolver or FallbackResolver())
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def build_payload(self, image_bytes: bytes) -> dict:
        """
        Build the JSON request body for one frame.

        Args:
            image_bytes: JPEG-encoded frame.

        Returns:
            dict: Chat-completion body with the prompt and an inline data URL.
        """
        # Base64 without line wrapping, as required inside a data URL
        image_b64 = base64.b64encode(image_bytes).decode("ascii")
        request = ChatCompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(
                    role="user",
                    content=[
                        ContentPart(type="text", text=SAFETY_PROMPT),
                        ContentPart(
                            type="image_url",
                            image_url=ImageUrl(url=f"data:image/jpeg;base64,{image_b64}"),
                        ),
                    ],
                )
            ],
            max_tokens=self._max_tokens,
        )
        return request.model_dump(exclude_none=True)

    def analyze(self, image_bytes: bytes) -> AnalysisVerdict:
        """
        Ask the model whether the frame shows immediate physical danger.

        Blocking; bounded by the connect/read timeouts. Never raises.

        Args:
            image_bytes: JPEG-encoded frame.

        Returns:
            AnalysisVerdict: ``is_danger`` is True only when a successful
            response's answer contains ``YES``.
        """
        try:
            payload = self.build_payload(image_bytes)
            logger.debug("Sending %d KB frame to %s", len(image_bytes) // 1024, self._host)

            t0 = time.time()
            response = self._session.post(self._api_url, json=payload, timeout=self._timeout)
            elapsed_ms = (time.time() - t0) * 1000

            if not 200 <= response.status_code < 300:
                logger.error(
                    "API request failed: %d - %s", response.status_code, response.text[:200]
                )
                return AnalysisVerdict(
                    is_danger=False, error=f"API error: {response.status_code}"
                )

            body = ChatCompletionResponse.model_validate(response.json())
            answer = body.first_content().upper()
            logger.info("VLM response: %r (%.0fms)", answer, elapsed_ms)
            return AnalysisVerdict(is_danger="YES" in answer, raw_answer=answer)

        except requests.exceptions.ConnectionError as exc:
            failure = _resolution_failure(exc)
            if failure is not None:
                logger.error("Name resolution failed for %s: %s", self._host, failure)
                return AnalysisVerdict(
                    is_danger=False, error=f"Name resolution failed: {failure}"
                )
            logger.error("Connection to %s failed: %s", self._host, exc)
            return AnalysisVerdict(is_danger=False, error=str(exc) or type(exc).__name__)

        except Exception as exc:
            logger.exception("Analysis failed: %s", type(exc).__name__)
            return AnalysisVerdict(is_danger=False, error=str(exc) or type(exc).__name__)

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()
