import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError

from ..infra.redis_client import get_redis
from ..storage.s3_compat import get_store

router = APIRouter()
logger = logging.getLogger("recipebox.ready")


@router.get("/ready")
async def ready(store=Depends(get_store)):
    redis_ok = False
    try:
        r = await get_redis()
        redis_ok = bool(await r.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Redis not reachable: {e}")
    return {"ok": True, "redis_ok": redis_ok, "storage_ok": store.healthcheck()}
