import asyncio
import logging
import os
import shutil
import uuid
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import Body, Depends, FastAPI, File, Form, Header, Request, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

import settings
from connections import Connection
from mockup_generator import run_mockup_job
from models import ProcessType
from processes import DuplicateProcessError, ProcessValidationError
from progress import ProgressHub
from transport import SSE_HEADERS, SSEStream

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

# --- Uploads directory ---

os.makedirs(settings.UPLOAD_DIR, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    hub = ProgressHub()
    hub.start()
    app.state.hub = hub
    app.state.jobs = set()
    yield
    for job in list(app.state.jobs):
        job.cancel()
    hub.stop()


# --- FastAPI app ---

app = FastAPI(title="Progress Hub", lifespan=lifespan)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


@app.exception_handler(DuplicateProcessError)
async def duplicate_process(_: Request, exc: DuplicateProcessError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


@app.exception_handler(ProcessValidationError)
async def invalid_process(_: Request, exc: ProcessValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "missing": exc.missing},
    )


def get_hub(request: Request) -> ProgressHub:
    return request.app.state.hub


def get_user_id(x_user_id: str = Header(default="anonymous")) -> str:
    """Subscriber id; authentication happens in front of this service."""
    return x_user_id


def get_user_info(
    x_user_name: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> dict:
    return {"name": x_user_name, "email": x_user_email}


async def _drain(hub: ProgressHub, stream: SSEStream, connection: Connection):
    """Pump queued events to the client; unregister however the stream ends."""
    try:
        async for chunk in stream:
            yield chunk
    except asyncio.CancelledError:
        pass
    finally:
        hub.close_stream(connection.key, connection)
        stream.close()


def _sse_response(hub: ProgressHub, stream: SSEStream, connection: Connection) -> StreamingResponse:
    return StreamingResponse(
        _drain(hub, stream, connection),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def _upload_url(path: str) -> str:
    return f"/uploads/{os.path.relpath(path, settings.UPLOAD_DIR)}"


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/progress/{operation_key}")
async def progress_stream(
    operation_key: str,
    operation_type: str = "analysis",
    hub: ProgressHub = Depends(get_hub),
):
    """SSE endpoint following one operation."""
    stream = SSEStream(maxsize=settings.STREAM_QUEUE_SIZE)
    connection = hub.open_progress_stream(operation_key, stream, operation_type)
    return _sse_response(hub, stream, connection)


@app.get("/api/processes/sse")
async def processes_stream(
    user_id: str = Depends(get_user_id),
    hub: ProgressHub = Depends(get_hub),
):
    """SSE endpoint for the global processes panel."""
    stream = SSEStream(maxsize=settings.STREAM_QUEUE_SIZE)
    connection = hub.open_processes_stream(user_id, stream)
    return _sse_response(hub, stream, connection)


@app.get("/api/processes/active")
async def my_processes(
    user_id: str = Depends(get_user_id),
    hub: ProgressHub = Depends(get_hub),
):
    """Processes started by the caller."""
    return [p.model_dump(mode="json") for p in hub.list_processes(user_id)]


@app.get("/api/processes")
async def all_processes(hub: ProgressHub = Depends(get_hub)):
    """Every process the hub knows about, whoever started it."""
    return [p.model_dump(mode="json") for p in hub.list_processes()]


@app.post("/api/processes/active")
async def register_process(
    payload: dict = Body(...),
    user_id: str = Depends(get_user_id),
    user: dict = Depends(get_user_info),
    hub: ProgressHub = Depends(get_hub),
):
    """Register a process started elsewhere so it shows on the panel."""
    process = hub.register_process(user_id, payload, user)
    return {"status": "registered", "process_id": process.id, "estimated_minutes": process.estimated_minutes}


@app.delete("/api/processes/{process_id}")
async def remove_process(
    process_id: str,
    user_id: str = Depends(get_user_id),
    hub: ProgressHub = Depends(get_hub),
):
    """Discard a process, e.g. once the user has opened its result."""
    removed = hub.remove_process(user_id, process_id)
    return {"status": "deleted" if removed else "not_found", "id": process_id}


@app.post("/api/mockups")
async def create_mockup(
    request: Request,
    frame: UploadFile = File(...),
    problem: str = Form(...),
    suggestion: str = Form(...),
    title: str = Form("UI mockup"),
    user_id: str = Depends(get_user_id),
    user: dict = Depends(get_user_info),
    hub: ProgressHub = Depends(get_hub),
):
    """Accept a screenshot and generate a mockup of the suggested fix in the background."""
    process_id = str(uuid.uuid4())
    filename = os.path.basename(frame.filename or "frame.png")
    frame_path = os.path.join(settings.UPLOAD_DIR, f"{process_id}_{filename}")
    with open(frame_path, "wb") as f:
        shutil.copyfileobj(frame.file, f)

    hub.register_process(
        user_id,
        {"id": process_id, "type": ProcessType.MOCKUP.value, "title": title, "frame_url": _upload_url(frame_path)},
        user,
    )

    jobs: set = request.app.state.jobs
    job = asyncio.create_task(
        run_mockup_job(hub, user_id, process_id, frame_path, problem, suggestion, url_for=_upload_url)
    )
    jobs.add(job)
    job.add_done_callback(jobs.discard)

    return {"status": "queued", "process_id": process_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
