import json
import logging

import requests

from . import config
from .models import GenerateRequest

logger = logging.getLogger("geminiproxy.client")


def build_url(model: str, stream: bool) -> str:
    task = "streamGenerateContent" if stream else "generateContent"
    url = f"{config.BASE_URL}/{config.API_VERSION}/models/{model}:{task}"
    if stream:
        url += "?alt=sse"
    return url


def generate_content(payload: GenerateRequest, api_key: str, model: str, stream: bool = False) -> requests.Response:
    """
    Call Gemini. Blocking; run it in a worker thread from async code.

    With ``stream=True`` the body is left unread so it can be consumed with
    ``iter_content``; the caller must close the response.
    """
    url = build_url(model, stream)
    logger.info("Forwarding to %s", url)
    return requests.post(
        url,
        data=payload.model_dump_json(),
        headers={
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
            "x-goog-api-client": config.API_CLIENT,
        },
        stream=stream,
        timeout=config.UPSTREAM_TIMEOUT,
    )


def describe_error(body: str) -> str:
    """Turn a Gemini error envelope into ``Error: [code status] message``; else return the body as is."""
    try:
        error = json.loads(body)["error"]
        return f"Error: [{error['code']} {error['status']}] {error['message']}"
    except (ValueError, KeyError, TypeError):
        return body
