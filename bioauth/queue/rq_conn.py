from redis import Redis
from rq import Queue
from bioauth.settings import settings


def get_queue() -> Queue:
    # RQ pickles job payloads, so this connection must not decode responses
    conn = Redis.from_url(settings.REDIS_URL)
    # a poll job runs for at most the poll budget plus provider retries
    return Queue(
        settings.RQ_QUEUE_NAME,
        connection=conn,
        default_timeout=int(settings.POLL_BUDGET_SEC) + 60,
    )
