from __future__ import annotations

import logging
from typing import Any

import httpx

from storyflow.workers.services.generation_client import GenerationClient

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}


async def execute_generation(item: dict[str, Any], client: GenerationClient) -> dict[str, Any]:
    """Run one claimed queue item through the generation service.

    Always returns a result payload for ``POST /queue/{id}/result``; service
    errors become structured failures instead of exceptions.
    """
    request = build_generation_request(item)
    if not request["article"]["url"] or not (request["article"]["title"] or request["article"]["body"]):
        return _failure("missing_inputs", "claimed item has no article content")

    try:
        payload = await client.generate(request)
    except httpx.TimeoutException as exc:
        return _failure("timeout", str(exc) or "generation request timed out", transient=True)
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        transient = status_code in TRANSIENT_STATUS_CODES or status_code >= 500
        return _failure(f"http_{status_code}", _response_detail(exc.response), transient=transient)
    except httpx.TransportError as exc:
        return _failure("transport_error", str(exc) or exc.__class__.__name__, transient=True)
    except ValueError as exc:
        return _failure("invalid_payload", f"generation response is not JSON: {exc}")

    story = _parse_story(payload)
    if story is None:
        return _failure("invalid_payload", "generation response has no slides list")
    return {"status": "completed", "story": story}


def build_generation_request(item: dict[str, Any]) -> dict[str, Any]:
    raw_inputs = item.get("inputs")
    inputs: dict[str, Any] = raw_inputs if isinstance(raw_inputs, dict) else {}
    return {
        "queue_item_id": item.get("id"),
        "article": {
            "title": _as_text(inputs.get("title")),
            "body": _as_text(inputs.get("body")),
            "url": _as_text(inputs.get("url")),
            "author": _as_text(inputs.get("author")),
            "published_at": _as_text(inputs.get("published_at")),
        },
        "slide_type": item.get("slide_type"),
        "tone": item.get("tone"),
        "writing_style": item.get("writing_style"),
        "ai_provider": item.get("ai_provider"),
    }


def _parse_story(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    story = payload.get("story") if isinstance(payload.get("story"), dict) else payload
    slides = story.get("slides")
    if not isinstance(slides, list):
        return None

    features = story.get("features")
    metadata = story.get("metadata")
    return {
        "title": _as_text(story.get("title")),
        "slides": [slide for slide in slides if isinstance(slide, dict)],
        "features": [feature for feature in features if isinstance(feature, str)] if isinstance(features, list) else [],
        "metadata": metadata if isinstance(metadata, dict) else {},
    }


def _failure(code: str, message: str, *, transient: bool = False) -> dict[str, Any]:
    logger.info("generation failed code=%s transient=%s message=%s", code, transient, message)
    return {
        "status": "failed",
        "error": {"code": code, "message": message, "transient": transient},
    }


def _response_detail(response: httpx.Response) -> str:
    text = response.text.strip()
    if not text:
        return f"generation service returned {response.status_code}"
    return text[:500]


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
