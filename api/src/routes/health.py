from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from api.src.db.database import get_db
from api.src.services.queue import get_redis_client, get_queue_length

router = APIRouter(tags=["health"])

async def check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def check_redis() -> str:
    try:
        client = await get_redis_client()
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "stageline-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    state = await check_database(db)
    if state == "healthy":
        return {"status": "healthy", "database": "connected"}
    return {"status": "unhealthy", "database": state}

@router.get("/health/redis")
async def redis_health_check():
    state = await check_redis()
    if state == "healthy":
        return {"status": "healthy", "redis": "connected"}
    return {"status": "unhealthy", "redis": state}

@router.get("/health/queue")
async def queue_health_check():
    try:
        return {"status": "healthy", "queue_length": await get_queue_length()}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for all services."""
    health = {
        "api": "healthy",
        "database": await check_database(db),
        "redis": await check_redis(),
        "queue_length": None,
    }

    if health["redis"] == "healthy":
        try:
            health["queue_length"] = await get_queue_length()
        except Exception as e:
            health["redis"] = f"unhealthy: {e}"

    overall = "healthy" if all(
        health[k] == "healthy" for k in ("api", "database", "redis")
    ) else "degraded"

    return {"status": overall, "services": health}
