"""
interpreter.py — normalized utterance → structured intent via Groq.

The request carries the utterance, the existing records, the recent
conversation and optional calibration hints; the model answers in JSON mode
with one intent.  Output that is not valid JSON or does not fit the Intent
schema becomes an `unknown` intent with zero confidence, which the
conversation layer never executes.  Transport failures raise
InterpreterError with a category the conversation layer can phrase for the
user.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence

import groq
from groq import AsyncGroq
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from config import GroqConfig
from takeoff.fields import FIELDS
from takeoff.models import ConversationMessage, SpeechPattern
from takeoff.normalizer import build_correction_map

log = logging.getLogger("takeoff.interpreter")

MAX_RECORDS_IN_PROMPT = 200
TRAINING_EXAMPLES = 10

IntentAction = Literal["create", "update", "delete", "copy", "query", "conversation", "unknown"]


class Intent(BaseModel):
    action: IntentAction = "unknown"
    target_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("target_id", "targetId", "lineId")
    )
    data: Optional[dict[str, Any]] = Field(default_factory=dict)
    message: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("data", mode="before")
    @classmethod
    def _null_data(cls, value: Any) -> Any:
        return {} if value is None else value


UNKNOWN = Intent(action="unknown", confidence=0.0)


class InterpreterError(RuntimeError):
    """The interpreter could not be reached or refused the request."""

    def __init__(self, category: str, detail: str = ""):
        super().__init__(f"{category}: {detail}" if detail else category)
        self.category = category
        self.detail = detail


class Interpreter:
    """Interface for anything that turns an utterance into an Intent."""

    async def interpret(
        self,
        utterance: str,
        records: Mapping[str, Mapping[str, Any]],
        history: Sequence[ConversationMessage],
        hints: str = "",
    ) -> Intent:
        raise NotImplementedError


def training_context(patterns: Sequence[SpeechPattern]) -> str:
    """Learned corrections and the most recent examples, for the request."""
    if not patterns:
        return ""
    lines = ["USER SPEECH PATTERNS:", "Corrections learned from this speaker:"]
    for said, meant in build_correction_map(patterns).items():
        lines.append(f'- When the user says "{said}", they mean "{meant}"')
    lines.append("")
    lines.append("Recent examples:")
    for i, pattern in enumerate(patterns[-TRAINING_EXAMPLES:], start=1):
        lines.append(f'{i}. User said: "{pattern.user_spoke}" → Meant: "{pattern.intended_command}"')
    lines.append("")
    lines.append("Apply these patterns when interpreting commands.")
    return "\n".join(lines)


def _field_catalog() -> str:
    return "\n".join(
        f"- {spec.name} ({spec.kind.value}{': ' + '/'.join(spec.choices) if spec.choices else ''}) {spec.display}"
        for spec in FIELDS
    )


_SYSTEM_PROMPT = (
    "You turn spoken commands from a steel estimator into one JSON object.\n"
    "Estimating lines are identified as L<n>; copies as <source>-L<n>.\n"
    "Reply with exactly these keys:\n"
    '{"action": "create|update|delete|copy|query|conversation|unknown", '
    '"lineId": string or null, "data": object, "message": string, "confidence": number 0..1}\n'
    "Use only these field names in data:\n"
    "{fields}\n"
    "Sizes use x notation (W12x24, HSS 6x6x1/4). Quantities are integers. "
    "Lengths and labor hours are numbers.\n"
    "If the command is unclear, answer action unknown with low confidence."
)


def _render_records(records: Mapping[str, Mapping[str, Any]]) -> str:
    items = list(records.items())[-MAX_RECORDS_IN_PROMPT:]
    if not items:
        return "EXISTING LINES: none"
    rendered = []
    for record_id, fields in items:
        summary = ", ".join(
            f"{k}={v}" for k, v in fields.items()
            if k in ("itemDescription", "sizeDesignation", "qty", "grade") and v not in (None, "")
        )
        rendered.append(f"- {record_id}: {summary}" if summary else f"- {record_id}")
    return "EXISTING LINES:\n" + "\n".join(rendered)


def parse_intent(content: str) -> Intent:
    try:
        payload = json.loads(content)
        if not isinstance(payload, dict):
            raise ValueError("intent must be a JSON object")
        return Intent.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        log.warning("event=interpreter_invalid_response error=%s raw=%.120r", exc, content)
        return UNKNOWN


class GroqInterpreter(Interpreter):
    """Chat completion in JSON mode, bounded by `timeout_sec`."""

    def __init__(self, config: GroqConfig, max_history: int = 20, api_key: Optional[str] = None, client: Any = None):
        self._config = config
        self._max_history = max_history
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            api_key = self._api_key or os.environ.get("GROQ_API_KEY")
            if not api_key:
                log.error("event=interpreter_no_api_key")
                raise InterpreterError("auth", "GROQ_API_KEY is not set")
            self._client = AsyncGroq(api_key=api_key)
        return self._client

    def build_messages(
        self,
        utterance: str,
        records: Mapping[str, Mapping[str, Any]],
        history: Iterable[ConversationMessage],
        hints: str = "",
    ) -> list[dict]:
        system = _SYSTEM_PROMPT.replace("{fields}", _field_catalog())
        system += "\n\n" + _render_records(records)
        if hints:
            system += "\n\n" + hints
        trimmed = list(history)[-self._max_history:] if self._max_history else []
        return (
            [{"role": "system", "content": system}]
            + [{"role": m.role, "content": m.content} for m in trimmed]
            + [{"role": "user", "content": utterance}]
        )

    async def _call_model(self, messages: list[dict]) -> str:
        response = await self._get_client().chat.completions.create(
            model=self._config.model,
            messages=messages,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            response_format={"type": "json_object"},
            stream=False,
        )
        return (response.choices[0].message.content or "").strip()

    async def interpret(
        self,
        utterance: str,
        records: Mapping[str, Mapping[str, Any]],
        history: Sequence[ConversationMessage],
        hints: str = "",
    ) -> Intent:
        messages = self.build_messages(utterance, records, history, hints)
        log.info("event=interpreter_request utterance=%.80r records=%d history=%d",
                 utterance, len(records), len(messages) - 2)
        try:
            content = await asyncio.wait_for(self._call_model(messages), timeout=self._config.timeout_sec)
        except asyncio.TimeoutError as exc:
            raise InterpreterError("timeout", f"no answer within {self._config.timeout_sec:.0f}s") from exc
        except groq.AuthenticationError as exc:
            raise InterpreterError("auth", "API key missing or invalid") from exc
        except groq.RateLimitError as exc:
            raise InterpreterError("rate-limit", str(exc)) from exc
        except groq.APITimeoutError as exc:
            raise InterpreterError("timeout", str(exc)) from exc
        except groq.APIConnectionError as exc:
            raise InterpreterError("network", str(exc)) from exc
        except groq.APIStatusError as exc:
            raise InterpreterError("service", f"HTTP {exc.status_code}") from exc

        intent = parse_intent(content)
        log.info("event=interpreter_result action=%s target=%s confidence=%.2f",
                 intent.action, intent.target_id, intent.confidence)
        return intent
