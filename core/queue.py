from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from rq import Queue
from config import settings

# connect to redis
redis_client = Redis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db)
async_redis = AsyncRedis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db, decode_responses=True)

# create a queue
call_sync_queue = Queue("call_sync", connection=redis_client)
