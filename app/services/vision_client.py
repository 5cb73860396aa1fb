"""
HTTP client for an OpenAI-compatible vision model.

Sends the canvas image plus the rendered instruction prompt to a
chat-completions endpoint and parses the `placements` JSON out of the reply.
Every failure is raised as a VisionModelError subclass so the orchestrator
can route it to the fallback planner.
"""

from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, List, Sequence

import requests

from app.config import get_settings
from app.errors import MalformedModelResponseError, ModelUnavailableError
from app.models.canvas import CanvasElement, Placement, Size
from app.services.preview import prepare_image_b64
from app.services.rate_limiter import VisionRateLimiter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a layout engine for a design canvas editor. "
    "Always answer with a single JSON object containing a `placements` array."
)
MAX_TOKENS = 1500
TEMPERATURE = 0.3


@dataclass(slots=True)
class ModelProposal:
    """Placements proposed by the vision model, plus its optional rationale."""

    placements: List[Placement] = field(default_factory=list)
    rationale: str | None = None


def _find_json_object(raw: str) -> str | None:
    depth = 0
    start = None
    for index, char in enumerate(raw):
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0 and start is not None:
                return raw[start : index + 1]
    return None


def extract_json_object(raw: str) -> Any:
    """
    Extract the first JSON object embedded in model output.

    Tries a fenced ```json block first, then the first balanced pair of
    braces. Raises ValueError if neither parses.
    """
    if "```" in raw:
        start = raw.index("```") + 3
        end = raw.find("```", start)
        if end != -1:
            fenced = raw[start:end].strip()
            if "\n" in fenced:
                first_line, rest = fenced.split("\n", 1)
                if first_line.strip().lower() in {"json", "json5", "javascript", "js"}:
                    fenced = rest.strip()
            if fenced.startswith("{") and fenced.endswith("}"):
                try:
                    return json.loads(fenced)
                except json.JSONDecodeError:
                    pass

    snippet = _find_json_object(raw)
    if snippet is None:
        raise ValueError("No JSON object found in model output")
    return json.loads(snippet)


def _number(entry: dict, *keys: str) -> float:
    for key in keys:
        if key in entry:
            value = entry[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedModelResponseError(f"Field {key!r} is not numeric: {value!r}")
            if not math.isfinite(value):
                raise MalformedModelResponseError(f"Field {key!r} is not finite")
            return float(value)
    raise MalformedModelResponseError(f"Placement is missing {keys[0]!r}")


def parse_placements(content: str) -> ModelProposal:
    """Parse the assistant message into a ModelProposal."""
    try:
        payload = extract_json_object(content)
    except ValueError as exc:
        raise MalformedModelResponseError(f"Model reply is not JSON: {exc}") from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("placements"), list):
        raise MalformedModelResponseError("Model reply has no `placements` array")

    placements: List[Placement] = []
    for entry in payload["placements"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            raise MalformedModelResponseError(f"Invalid placement entry: {entry!r}")
        scale_x = _number(entry, "scaleX", "scale_x")
        scale_y = _number(entry, "scaleY", "scale_y")
        if scale_x <= 0 or scale_y <= 0:
            raise MalformedModelResponseError(f"Non-positive scale for {entry['id']!r}")
        placements.append(
            Placement(
                id=entry["id"],
                left=_number(entry, "left"),
                top=_number(entry, "top"),
                scale_x=scale_x,
                scale_y=scale_y,
            )
        )

    rationale = payload.get("rationale") or payload.get("reasoning")
    return ModelProposal(placements=placements, rationale=rationale if isinstance(rationale, str) else None)


class VisionClient:
    """
    Minimal chat-completions client for placement proposals.

    Configured from Settings; without an API key the client reports itself as
    unavailable and every call raises ModelUnavailableError immediately.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        request_timeout: float = 8.0,
        rate_limiter: VisionRateLimiter | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.rate_limiter = rate_limiter
        self._http = http or requests.Session()

        if not api_key:
            logger.warning("Vision API key not set. All resizes will use the fallback planner.")
        else:
            logger.info("Vision client initialized (model=%s, base_url=%s)", model, self.base_url)

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _build_messages(self, image_b64: str, instructions: str) -> list:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": instructions},
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_b64}"}},
                ],
            },
        ]

    def propose_placements(
        self,
        image_bytes: bytes,
        elements: Sequence[CanvasElement],
        current: Size,
        target: Size,
        instructions: str,
    ) -> ModelProposal:
        """
        Ask the model for new placements of `elements` on the `target` canvas.

        Raises:
            ModelUnavailableError: no key, rate limited, or transport/HTTP failure.
            MalformedModelResponseError: the reply could not be parsed.
        """
        if not self.is_available():
            raise ModelUnavailableError("Vision model is not configured")
        if self.rate_limiter is not None and not self.rate_limiter.try_acquire():
            raise ModelUnavailableError("Vision model rate limit reached")

        try:
            image_b64 = prepare_image_b64(image_bytes)
        except ValueError as exc:
            raise ModelUnavailableError(str(exc)) from exc

        payload = {
            "model": self.model,
            "messages": self._build_messages(image_b64, instructions),
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        logger.info(
            "Calling vision model %s for %s elements (%sx%s -> %sx%s)",
            self.model,
            len(elements),
            current.width,
            current.height,
            target.width,
            target.height,
        )
        try:
            response = self._http.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.request_timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise ModelUnavailableError(f"Vision request failed: {exc}") from exc

        if response.status_code == 429:
            if self.rate_limiter is not None:
                self.rate_limiter.report_429()
            raise ModelUnavailableError("Vision model rate limited (429)")
        if response.status_code >= 400:
            raise ModelUnavailableError(f"Vision model returned HTTP {response.status_code}: {response.text[:200]}")

        if self.rate_limiter is not None:
            self.rate_limiter.report_success()

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedModelResponseError("Unexpected chat-completions payload") from exc
        if not isinstance(content, str):
            raise MalformedModelResponseError("Assistant message has no text content")

        proposal = parse_placements(content)
        logger.info("Vision model proposed %s placements", len(proposal.placements))
        return proposal


_default_client: VisionClient | None = None
_default_client_lock = threading.Lock()


def get_vision_client() -> VisionClient:
    """Return the process-wide vision client, created from settings on first use."""
    global _default_client

    if _default_client is None:
        with _default_client_lock:
            if _default_client is None:
                settings = get_settings()
                _default_client = VisionClient(
                    api_key=settings.vision_api_key,
                    model=settings.vision_model,
                    base_url=settings.vision_base_url,
                    request_timeout=settings.model_timeout_seconds,
                    rate_limiter=VisionRateLimiter(
                        max_requests_per_minute=settings.vision_max_requests_per_minute,
                    ),
                )
    return _default_client
