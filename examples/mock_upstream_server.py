"""Mock OpenAI-compatible upstream for local relay runs.

Run with `uvicorn examples.mock_upstream_server:app --port 10000`. Put
"governor" in the last user message to get a capacity refusal on the
streaming call; the non-streaming call still answers.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-upstream")

REASONING = "The user greeted me. A short friendly reply fits."
CONTENT = "Hello! How can I help you today?"


def _usage(messages: list[dict[str, Any]]) -> dict[str, int]:
    prompt = sum(len(str(m.get("content") or "")) for m in messages)
    completion = len(REASONING) + len(CONTENT)
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    model = payload.get("model") or "demo-model"
    stream = bool(payload.get("stream"))

    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
    base = {
        "id": f"chatcmpl-{uuid.uuid4().hex}",
        "created": int(datetime.now(timezone.utc).timestamp()),
        "model": model,
    }

    if not stream:
        return JSONResponse(
            {
                **base,
                "object": "chat.completion",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "reasoning_content": REASONING, "content": CONTENT},
                        "finish_reason": "stop",
                    }
                ],
                "usage": _usage(messages),
            }
        )

    if "governor" in str(last_user.get("content") or "").lower():
        return JSONResponse(
            {"error": {"message": "request rejected by rate governor", "type": "overloaded"}},
            status_code=429,
        )

    def chunk(delta: dict[str, Any], finish_reason: str | None = None, **extra: Any) -> str:
        body = {
            **base,
            "object": "chat.completion.chunk",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            **extra,
        }
        return f"data: {json.dumps(body)}\n\n"

    async def gen():
        for word in REASONING.split(" "):
            yield chunk({"reasoning_content": word + " "})
            await asyncio.sleep(0.02)
        for word in CONTENT.split(" "):
            yield chunk({"content": word + " "})
            await asyncio.sleep(0.02)
        yield chunk({}, "stop", usage=_usage(messages))
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
