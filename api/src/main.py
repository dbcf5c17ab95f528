import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.config import get_settings
from api.src.db.database import init_db, close_db
from api.src.routes import health_router, pipelines_router, webhooks_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Stageline API")
    await init_db()
    yield
    logger.info("Shutting down Stageline API")
    await close_db()

app = FastAPI(
    title="Stageline",
    description="Staged pipeline runner",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(pipelines_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Stageline",
        "version": "0.1.0",
        "docs": "/docs"
    }

def serve():
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
