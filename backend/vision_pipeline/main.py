import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vision_pipeline.api.routes import router
from vision_pipeline.core.settings import settings
from vision_pipeline.db.session import engine, init_db
from vision_pipeline.services.runtime import build_pipeline

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup() -> None:
    init_db()
    app.state.pipeline = build_pipeline(engine, settings)
    if settings.worker_enabled:
        app.state.pipeline.scheduler.start()
    else:
        logger.info("Job scheduler disabled (worker_enabled=false)")


@app.on_event("shutdown")
async def shutdown() -> None:
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.scheduler.stop()


app.include_router(router)


@app.get("/")
def health():
    return {"ok": True, "service": settings.app_name}
