import os

from arq.connections import ArqRedis, RedisSettings, create_pool


def get_redis_settings() -> RedisSettings:
    """Get Redis settings for the import worker queue."""
    return RedisSettings.from_dsn(os.environ.get("REDIS_URL", "redis://redis:6379"))


async def get_queue() -> ArqRedis:
    """Create a connection pool to the Redis queue."""
    return await create_pool(get_redis_settings())


async def enqueue_import(
    job_id: int,
    project_id: int,
    file_path: str,
    batch_size: int,
    concurrent_batches: int,
    user_name: str,
) -> str | None:
    """Hand an already-created import job to the arq worker.

    Returns:
        The arq job id, or None when a job with the same key is queued
    """
    redis = await get_queue()
    try:
        job = await redis.enqueue_job(
            "run_element_type_import",
            job_id,
            project_id,
            file_path,
            batch_size,
            concurrent_batches,
            user_name,
            _job_id=f"element-type-import-{job_id}",
        )
    finally:
        await redis.close()
    return job.job_id if job else None
