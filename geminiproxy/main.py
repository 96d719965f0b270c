import json
import logging

import pydantic
import requests
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool
from starlette.datastructures import MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .client import describe_error, generate_content
from .errors import (
    AuthError,
    DownstreamTransportError,
    GatewayError,
    IncompleteStreamError,
    ResponseTransformError,
    RoutingError,
    StreamDecodeError,
    ValidationError,
)
from .models import ChatCompletionRequest
from .stream import StreamReframer
from .transform import build_completion, generate_completion_id, render_completion, route_model, transform_request

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger("geminiproxy")

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
    "Access-Control-Allow-Headers": "*",
}


class AllowAllOriginsMiddleware:
    """Answers every OPTIONS preflight itself and stamps a wildcard origin on all other responses."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(status_code=204, headers=PREFLIGHT_HEADERS)
            await response(scope, receive, send)
            return

        async def send_with_origin(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["Access-Control-Allow-Origin"] = "*"
            await send(message)

        await self.app(scope, receive, send_with_origin)


app = FastAPI(title="Gemini OpenAI-compatible gateway")
app.add_middleware(AllowAllOriginsMiddleware)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.error(
        "%s %s failed with %d (%s): %s",
        request.method, request.url.path, exc.status_code, type(exc).__name__, exc.message,
    )
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    # unknown path or wrong method on a known one
    if exc.status_code in (404, 405):
        return await gateway_error_handler(request, RoutingError("404 Not Found"))
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    # served by ServerErrorMiddleware, outside AllowAllOriginsMiddleware
    logger.error("%s %s crashed", request.method, request.url.path, exc_info=exc)
    return PlainTextResponse(
        "Internal Server Error",
        status_code=500,
        headers={"Access-Control-Allow-Origin": "*"},
    )


def bearer_token(authorization: str | None) -> str:
    scheme, _, key = (authorization or "").partition(" ")
    key = key.strip()
    if scheme.lower() != "bearer" or not key:
        raise AuthError("Bad credentials")
    return key


async def read_chat_request(request: Request) -> ChatCompletionRequest:
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
        raise ValidationError(".messages array required")
    if not data["messages"]:
        raise ValidationError(".messages array must not be empty")

    try:
        return ChatCompletionRequest.model_validate(data)
    except pydantic.ValidationError as e:
        error = e.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        raise ValidationError(f"Invalid request: .{location}: {error['msg']}") from e


async def relay_stream(response: requests.Response, reframer: StreamReframer, request: Request):
    """Pipe the downstream SSE body through the re-framer, chunk by chunk."""
    try:
        chunks = response.iter_content(chunk_size=config.STREAM_CHUNK_SIZE)
        async for chunk in iterate_in_threadpool(chunks):
            if await request.is_disconnected():
                logger.info("Client disconnected, dropping stream %s", reframer.completion_id)
                return
            for frame in reframer.feed(chunk):
                yield frame
            if reframer.finished:
                break
        else:
            for frame in reframer.close():
                yield frame
        reframer.check_complete()
        logger.info("Stream %s completed", reframer.completion_id)
    except StreamDecodeError as e:
        logger.error("Aborting stream %s: %s", reframer.completion_id, e.message)
    except IncompleteStreamError as e:
        logger.error("Stream %s is incomplete: %s", reframer.completion_id, e.message)
        yield reframer.error_frame(e)
    except requests.RequestException:
        logger.exception("Downstream stream %s broke off", reframer.completion_id)
    finally:
        response.close()


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    api_key = bearer_token(request.headers.get("authorization"))
    chat_request = await read_chat_request(request)

    model = route_model(chat_request.model)
    stream = bool(chat_request.stream)
    payload = transform_request(chat_request)
    completion_id = generate_completion_id()
    logger.info(
        "Request %s (%s): %s -> %s",
        completion_id, "stream" if stream else "static", chat_request.model, model,
    )

    try:
        response = await run_in_threadpool(generate_content, payload, api_key, model, stream)
    except requests.RequestException as e:
        logger.exception("Downstream call for %s failed", completion_id)
        raise DownstreamTransportError(str(e)) from e

    if not response.ok:
        try:
            body = await run_in_threadpool(lambda: response.text)
        finally:
            response.close()
        logger.error("Downstream answered %d for %s: %s", response.status_code, completion_id, body)
        raise DownstreamTransportError(describe_error(body), status_code=response.status_code)

    if stream:
        return StreamingResponse(
            relay_stream(response, StreamReframer(completion_id, model), request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    try:
        data = json.loads(response.text)
    except ValueError as e:
        raise ResponseTransformError(f"Downstream response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ResponseTransformError("Downstream response is not a JSON object")

    completion = build_completion(data.get("candidates"), model, completion_id)
    logger.debug("Completion %s: %s", completion_id, completion.choices[0].message.content)
    return Response(render_completion(completion), media_type="application/json")

