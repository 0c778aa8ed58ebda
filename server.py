import json
import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from sibflo.backend import REQUEST_TYPES, Backend
from sibflo.svg_tools import error_placeholder_svg

logger = logging.getLogger("sibflo_backend")

app = FastAPI(title="sibflo")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_backend: Optional[Backend] = None


def get_backend() -> Backend:
    global _backend
    if _backend is None:
        _backend = Backend()
    return _backend


class BackendRequest(BaseModel):
    type: str
    payload: Optional[Any] = None


class UiCodesRequest(BaseModel):
    screen_descriptions: List[dict]
    quality: str = "fast"
    user_comments: Optional[str] = None


class Events(BaseModel):
    session_id: Optional[str] = None
    events: List[dict]


@app.post("/requests")
async def send_request(request: BackendRequest):
    if request.type not in REQUEST_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown request type: {request.type}")
    response_data = await get_backend().process_request(request.model_dump())
    if response_data.pop("internal", False):
        return JSONResponse(status_code=500, content=response_data)
    return response_data


@app.post("/ui-codes/stream")
async def stream_ui_codes(request: UiCodesRequest):
    """
    One NDJSON line per finished screen, in completion order, then the full list.
    """
    service = get_backend().service
    screens = request.screen_descriptions

    async def lines():
        codes = [""] * len(screens)
        try:
            async for index, code in service.stream_ui_codes(screens, request.quality, request.user_comments):
                codes[index] = code
                yield json.dumps({"index": index, "code": code, "done": False}) + "\n"
        except Exception as e:
            # the response has started; report in-band and fill what is missing
            logger.info(f"stream_ui_codes: aborted: {e}")
            codes = [c or error_placeholder_svg(str(e)) for c in codes]
            yield json.dumps({"codes": codes, "done": True, "error": str(e)}) + "\n"
            return
        yield json.dumps({"codes": codes, "done": True}) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@app.post("/events")
async def send_events(events: Events):
    try:
        count = get_backend().record_events(events.session_id, events.events)
        return {"status": "success", "event_count": count}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/sessions/export")
async def export_sessions():
    exported = get_backend().export_sessions()
    return JSONResponse(
        content=exported,
        headers={"Content-Disposition": f'attachment; filename="{exported["filename"]}"'},
    )


@app.delete("/sessions")
async def clear_sessions():
    return {"status": "success", "cleared": get_backend().clear_sessions(), "at": datetime.now().isoformat()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
