import json
import logging
import secrets
import time
from typing import Any

from . import config
from .errors import EmptyCandidatesError, InvalidMessageError, ResponseTransformError
from .models import (
    ChatCompletionChoice,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    CompletionMessage,
    GenerateRequest,
    PromptText,
)

logger = logging.getLogger("geminiproxy.transform")

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0
DEFAULT_TOP_K = 40
DEFAULT_MODEL = "gpt-3.5"


def route_model(requested: str | None) -> str:
    """Map an OpenAI model name onto a Gemini model; first matching rule wins."""
    requested = requested or DEFAULT_MODEL
    rules = [
        (config.HIGH_TIER_MARKER, config.PRO_MODEL),
    ]
    for marker, downstream in rules:
        if marker in requested:
            return downstream
    return config.FLASH_MODEL


def message_parts(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """
    Reduce each message to its payload: either its content or its function call.

    The prompt-based Gemini request has nowhere to put these yet, so the result
    is not sent downstream; the pass still rejects messages carrying neither.
    """
    parts = []
    for index, message in enumerate(messages):
        if message.content is not None:
            parts.append({"content": message.content})
        elif message.function_call:
            parts.append({"function_call": message.function_call})
        else:
            raise InvalidMessageError(f"Invalid message object at messages[{index}]")
    return parts


def build_prompt(messages: list[ChatMessage]) -> str:
    lines = []
    for message in messages:
        content = message.content or ""
        if message.role == "user":
            lines.append(content)
        else:
            lines.append(f"[Assistant] {content}")
    return "\n".join(lines)


def transform_request(request: ChatCompletionRequest) -> GenerateRequest:
    prompt = build_prompt(request.messages)
    message_parts(request.messages)

    return GenerateRequest(
        prompt=PromptText(text=prompt),
        temperature=DEFAULT_TEMPERATURE if request.temperature is None else request.temperature,
        top_p=DEFAULT_TOP_P if request.top_p is None else request.top_p,
        top_k=DEFAULT_TOP_K if request.top_k is None else request.top_k,
    )


def generate_completion_id() -> str:
    """Base36 millisecond timestamp plus 16 random bytes, prefixed like OpenAI ids."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = digits[rem] + stamp
    return f"chatcmpl-{stamp or '0'}-{secrets.token_hex(16)}"


def candidate_text(candidate: Any) -> str:
    """
    Extract the generated text of one candidate.

    ``content`` is either a plain string or a Gemini content object whose
    ``parts`` carry the text.
    """
    if not isinstance(candidate, dict):
        return ""
    content = candidate.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return "".join(
            part.get("text", "") for part in content.get("parts") or [] if isinstance(part, dict)
        )
    return ""


def build_completion(candidates: list[Any] | None, model: str, completion_id: str) -> ChatCompletionResponse:
    if candidates is not None and not isinstance(candidates, list):
        raise ResponseTransformError("Downstream candidates is not a list")
    if not candidates:
        raise EmptyCandidatesError("No candidates found in response")
    if not isinstance(candidates[0], dict):
        raise ResponseTransformError("Downstream candidate is not an object")
    if len(candidates) > 1:
        logger.debug("Downstream returned %d candidates, keeping the first", len(candidates))

    return ChatCompletionResponse(
        id=completion_id,
        created=int(time.time()),
        model=model,
        choices=[
            ChatCompletionChoice(
                index=0,
                message=CompletionMessage(role="assistant", content=candidate_text(candidates[0])),
                finish_reason="stop",
            )
        ],
    )


def render_completion(completion: ChatCompletionResponse) -> str:
    return json.dumps(completion.model_dump(), indent=2, ensure_ascii=False)
