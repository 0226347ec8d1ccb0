from __future__ import annotations

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .config import get_settings
from .models import AnalyzeRequest, PromptSource
from .services.analysis_engine import BrandVisibilityEngine, ValidationError
from .services.provider_config import resolve_providers
from .services.stage_controller import ensure_own_competitor, merge_prompts

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

settings = get_settings()

app = FastAPI(title="Brand Monitor")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_engine() -> BrandVisibilityEngine:
    return BrandVisibilityEngine()


def _sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/brand-monitor/providers")
async def list_providers() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "providers": [
            {"id": provider.id, "name": provider.name, "model": provider.default_model}
            for provider in resolve_providers()
        ]
    }


@app.post("/api/brand-monitor/analyze")
async def analyze(
    payload: AnalyzeRequest,
    engine: BrandVisibilityEngine = Depends(get_engine),
) -> StreamingResponse:
    """Run a visibility analysis and stream progress as server-sent events."""

    company = payload.company.to_domain()
    competitors = ensure_own_competitor(company, [c.to_domain() for c in payload.competitors])
    generated = [p.to_domain(index) for index, p in enumerate(payload.prompts) if p.source is PromptSource.SYSTEM]
    custom = [p.prompt for p in payload.prompts if p.source is not PromptSource.SYSTEM]
    prompts = merge_prompts(generated, custom)
    providers = resolve_providers(payload.providers)

    logger.info(
        "Received analyze request for %s (%d competitors, %d prompts, %d providers)",
        company.name,
        len(competitors),
        len(prompts),
        len(providers),
    )

    try:
        run = engine.create_run(company, competitors, prompts, providers)
    except ValidationError as exc:
        logger.error("Invalid analyze request: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    async def event_stream() -> AsyncIterator[str]:
        task = asyncio.create_task(engine.execute(run))
        task.add_done_callback(lambda _: run.channel.close())
        try:
            async for snapshot in run.channel:
                yield _sse("progress", snapshot.to_dict())
            result = await task
            if result is not None:
                yield _sse("complete", result.to_dict())
        except Exception as exc:  # noqa: BLE001 - report to the client instead of dropping the stream
            logger.exception("Analysis stream failed")
            yield _sse("error", {"message": str(exc)})
        finally:
            if not task.done():
                run.cancel()
                task.cancel()

    return StreamingResponse(event_stream(), media_type="text/event-stream")


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "brand_monitor.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )
