"""Client for the downstream text-generation endpoint (Ollama `/api/generate`).

Each request owns one `CompletionSlot`. The slot moves from PENDING to exactly
one terminal state; whichever of completion, timeout or cancellation arrives
first wins and later signals are ignored.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from errors import GenerationCancelled, GenerationError, GenerationTimeout

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a close friend who knows this person well. Respond naturally and directly, "
    "like you would in any normal conversation. Be warm, authentic, and helpful."
)


class GenerationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    response: str
    model: str = ""
    done: bool = True
    eval_count: Optional[int] = None
    total_duration: Optional[int] = None


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw_excerpt: str = ""


GenerationOutcome = Union[GenerationResponse, ParseFailure]


def _merge_stream_lines(body: str) -> Optional[dict]:
    """Join newline-delimited streaming chunks into a single payload."""
    fragments = []
    last: dict = {}
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(item, dict):
            return None
        if "error" in item:
            return item
        fragments.append(str(item.get("response", "")))
        last = item
    if not fragments:
        return None
    merged = dict(last)
    merged["response"] = "".join(fragments)
    return merged


def parse_generation_response(raw: Union[str, bytes, Mapping[str, Any]]) -> GenerationOutcome:
    """Parse a generate-endpoint body into a typed response or a ParseFailure."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, str):
        body = raw.strip()
        if not body:
            return ParseFailure("empty response body")
        try:
            payload: Any = json.loads(body)
        except json.JSONDecodeError:
            payload = _merge_stream_lines(body)
            if payload is None:
                return ParseFailure("response body is not JSON", body[:200])
    else:
        payload = raw

    if not isinstance(payload, Mapping):
        return ParseFailure("response body is not a JSON object", str(payload)[:200])
    if "error" in payload and not payload.get("response"):
        return ParseFailure(f"endpoint reported an error: {payload['error']}")

    try:
        parsed = GenerationResponse.model_validate(dict(payload))
    except ValidationError as exc:
        return ParseFailure(f"unexpected response shape: {exc.error_count()} validation error(s)", str(payload)[:200])

    if not parsed.response.strip():
        return ParseFailure("endpoint returned empty text")
    return parsed


class CompletionState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class CompletionSlot:
    """Single-result slot whose first terminal transition wins."""

    def __init__(self):
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._state = CompletionState.PENDING
        self._value: Optional[GenerationOutcome] = None
        self._error: Optional[BaseException] = None

    @property
    def state(self) -> CompletionState:
        return self._state

    def done(self) -> bool:
        return self._done.is_set()

    def _transition(
        self,
        state: CompletionState,
        value: Optional[GenerationOutcome] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        with self._lock:
            if self._state is not CompletionState.PENDING:
                return False
            self._state = state
            self._value = value
            self._error = error
        self._done.set()
        return True

    def complete(self, value: GenerationOutcome) -> bool:
        return self._transition(CompletionState.COMPLETED, value=value)

    def fail(self, error: BaseException) -> bool:
        return self._transition(CompletionState.COMPLETED, error=error)

    def time_out(self) -> bool:
        return self._transition(CompletionState.TIMED_OUT)

    def cancel(self) -> bool:
        return self._transition(CompletionState.CANCELLED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def result(self) -> GenerationOutcome:
        if self._state is CompletionState.PENDING:
            raise RuntimeError("Generation has not finished")
        if self._state is CompletionState.TIMED_OUT:
            raise GenerationTimeout("Generation timed out")
        if self._state is CompletionState.CANCELLED:
            raise GenerationCancelled("Generation was cancelled")
        if self._error is not None:
            raise self._error
        assert self._value is not None
        return self._value


class GenerationCall:
    """One in-flight request to the generate endpoint."""

    def __init__(self, client: "GenerationClient", payload: dict):
        self._client = client
        self._payload = payload
        self.slot = CompletionSlot()

    def cancel(self) -> bool:
        cancelled = self.slot.cancel()
        if cancelled:
            logger.info("Generation request cancelled")
        return cancelled

    def run(self) -> GenerationOutcome:
        """Send the request, settle the slot and return its outcome (or raise)."""
        if not self.slot.done():
            try:
                response = self._client.http.post("/api/generate", json=self._payload)
            except httpx.TimeoutException as exc:
                logger.warning("Generation request timed out: %s", exc)
                self.slot.time_out()
            except httpx.HTTPError as exc:
                logger.warning("Generation request failed: %s", exc)
                self.slot.fail(GenerationError(f"Generation endpoint unreachable: {exc}"))
            except httpx.InvalidURL as exc:
                logger.warning("Generation URL rejected: %s", exc)
                self.slot.fail(GenerationError(f"Generation endpoint URL is invalid: {exc}"))
            else:
                if response.status_code >= 400:
                    outcome = parse_generation_response(response.content)
                    reason = outcome.reason if isinstance(outcome, ParseFailure) else response.text[:200]
                    self.slot.fail(GenerationError(f"Generation endpoint returned {response.status_code}: {reason}"))
                else:
                    self.slot.complete(parse_generation_response(response.content))
        return self.slot.result()


class GenerationClient:
    """Blocking client for an Ollama-compatible generate endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2:3b",
        timeout: float = 120.0,
        temperature: float = 0.5,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def build_prompt(self, context: str, query: str) -> str:
        query = (query or "").strip()
        context = (context or "").strip()
        if not context:
            return query
        return f"{context}\n\n--- Message ---\n{query}"

    def prepare(self, context: str, query: str) -> GenerationCall:
        payload = {
            "model": self.model,
            "prompt": self.build_prompt(context, query),
            "system": self.system_prompt,
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        return GenerationCall(self, payload)

    def generate(self, context: str, query: str) -> GenerationOutcome:
        return self.prepare(context, query).run()

    def close(self):
        self.http.close()
