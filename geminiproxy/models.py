from typing import Any, Literal

from pydantic import BaseModel


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system", "function"]
    content: str | None = None
    name: str | None = None
    function_call: dict[str, Any] | None = None


class ChatCompletionRequest(BaseModel):
    messages: list[ChatMessage]
    # None means "not sent"; the router and the request transformer fill in the defaults
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stream: bool | None = None


class PromptText(BaseModel):
    text: str


class GenerateRequest(BaseModel):
    """Body of a Gemini generateContent / streamGenerateContent call."""

    prompt: PromptText
    temperature: float
    top_p: float
    top_k: int


class CompletionMessage(BaseModel):
    role: str = "assistant"
    content: str


class ChatCompletionChoice(BaseModel):
    index: int = 0
    message: CompletionMessage
    finish_reason: str = "stop"


class ChatCompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[ChatCompletionChoice]


class ChatCompletionChunkChoice(BaseModel):
    index: int = 0
    delta: dict[str, str]
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChatCompletionChunkChoice]
