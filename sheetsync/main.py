import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from sheetsync.config import get_settings
from sheetsync.integrations.supabase_store import SupabaseJobStore
from sheetsync.schema.columns import generate_schema_mapping
from sheetsync.sync.pipeline import SyncPipeline
from sheetsync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)
settings = get_settings()
job_store = SupabaseJobStore(settings)
sync_pipeline = SyncPipeline(settings, job_store)
sync_scheduler = SyncScheduler(settings, job_store, sync_pipeline)


@asynccontextmanager
async def lifespan(_: FastAPI):
    sync_scheduler.start()
    try:
        yield
    finally:
        await sync_scheduler.stop()


app = FastAPI(
    title="SheetSync Engine",
    version="0.1.0",
    lifespan=lifespan,
)


class SchemaMappingRequest(BaseModel):
    headers: list[str] = Field(default_factory=list)


@app.api_route("/", methods=["GET", "HEAD"])
async def root() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/scheduler/status")
async def scheduler_status() -> dict:
    return sync_scheduler.get_status()


@app.post("/jobs/{job_id}/run")
async def run_job_now(job_id: str) -> dict:
    if sync_scheduler.is_running(job_id):
        raise HTTPException(status_code=409, detail=f"job {job_id} is already running")

    result = await asyncio.to_thread(sync_scheduler.run_now, job_id)
    if result is None:
        raise HTTPException(status_code=409, detail=f"job {job_id} is already running")
    logger.info("manual run finished: job=%s run=%s status=%s", job_id, result.run_id, result.status.value)
    return result.to_log_record()


@app.post("/schema/mapping")
async def schema_mapping(payload: SchemaMappingRequest) -> dict:
    mapping = generate_schema_mapping(payload.headers)
    return {
        "mapping": [
            {"originalName": item.original_name, "bigQueryName": item.destination_name}
            for item in mapping
        ]
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sheetsync.main:app", host=settings.app_host, port=settings.app_port)
