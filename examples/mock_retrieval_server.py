"""Mock retrieval backend answering `POST /search` with canned snippets.

Run with `uvicorn examples.mock_retrieval_server:app --port 10002` and set
`enrichment.retrieval_url` to `http://127.0.0.1:10002/search`.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

app = FastAPI(title="mock-retrieval")

DOCUMENTS = [
    {"title": "Relay overview", "content": "The relay forwards reasoning and answer tokens as server-sent events."},
    {"title": "Fallbacks", "content": "Capacity refusals are retried once without streaming, then replayed."},
    {"title": "Demo mode", "content": "When the model is unreachable a local demo stream keeps the session alive."},
]


@app.post("/search")
async def search(request: Request) -> JSONResponse:
    payload = await request.json()
    query = str(payload.get("query") or "").lower()
    limit = int(payload.get("limit") or 10)
    words = {word for word in query.split() if len(word) > 2}
    hits = [doc for doc in DOCUMENTS if words & set(doc["content"].lower().split())]
    return JSONResponse({"results": hits[:limit]})
