import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tunefree.api.endpoints import music
from tunefree.core.config import LOG_LEVEL
from tunefree.core.http_client import HttpClientManager

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await HttpClientManager.close()


app = FastAPI(
    title="TuneFree",
    description="Multi-provider music search, charts, lyrics and playback resolution.",
    version="1.0.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.include_router(music.router, prefix="/v1")


@app.get("/v1/health")
async def health_check():
    return {"status": "ok"}
