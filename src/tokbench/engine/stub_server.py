"""A stand-in completion server for dry runs and tests.

Run it where a real service would be:

    uvicorn tokbench.engine.stub_server:app --port 8080

``STUB_FAIL_EVERY=N`` makes every Nth completion answer without a usage block.
Tests build their own app with ``create_app(StubBehavior(...))``.
"""
from __future__ import annotations

import asyncio
import os
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse


class StubBehavior:
    def __init__(self, *, fail_every: int = 0, delay_s: float = 0.0, usage_style: str = "usage"):
        self.fail_every = fail_every
        self.delay_s = delay_s
        self.usage_style = usage_style   # "usage" (OpenAI-style) or "top" (llama.cpp counters)
        self.calls = 0
        self.prompts: list[str] = []
        self.fail_prompts: set[str] = set()        # always answer these without usage
        self.fail_once_prompts: set[str] = set()   # only the first time they are seen

    def should_fail(self, call_no: int, prompt: str) -> bool:
        if prompt in self.fail_prompts:
            return True
        if prompt in self.fail_once_prompts:
            self.fail_once_prompts.discard(prompt)
            return True
        return self.fail_every > 0 and call_no % self.fail_every == 0


def _prompt_tokens(prompt: str) -> int:
    return max(1, len(prompt.split()))


def create_app(behavior: Optional[StubBehavior] = None) -> FastAPI:
    behavior = behavior or StubBehavior(fail_every=int(os.environ.get("STUB_FAIL_EVERY", "0")))
    app = FastAPI()
    app.state.behavior = behavior

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/")
    def root():
        return PlainTextResponse("stub")

    async def _complete(body: dict[str, Any], budget_key: str) -> JSONResponse:
        behavior.calls += 1
        call_no = behavior.calls
        prompt = str(body.get("prompt", ""))
        behavior.prompts.append(prompt)
        if behavior.delay_s > 0:
            await asyncio.sleep(behavior.delay_s)
        if behavior.should_fail(call_no, prompt):
            return JSONResponse({"error": "engine overloaded"})

        p = _prompt_tokens(prompt)
        c = int(body.get(budget_key, 16))
        text = " ".join(["tok"] * c)
        if behavior.usage_style == "top":
            return JSONResponse({"content": text, "tokens_evaluated": p, "tokens_predicted": c})
        return JSONResponse(
            {
                "choices": [{"text": text}],
                "usage": {"prompt_tokens": p, "completion_tokens": c, "total_tokens": p + c},
            }
        )

    @app.post("/completion")
    async def completion(request: Request):
        return await _complete(await request.json(), "n_predict")

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        return await _complete(await request.json(), "max_tokens")

    return app


app = create_app()
