"""
RQ queue client for fanning challenge evaluation out to background workers.

The sweep can run inline or enqueue one job per user; workers started with
``rq worker challenges`` pick them up.
"""
from typing import Optional

from redis import Redis
from rq import Queue

from finquest.core.config import settings

_queue: Optional[Queue] = None


def get_queue() -> Queue:
    """Lazily connect to Redis so importing this module never opens a socket."""
    global _queue
    if _queue is None:
        redis_conn = Redis.from_url(settings.REDIS_URL)
        _queue = Queue(settings.CHALLENGE_SWEEP_QUEUE, connection=redis_conn)
    return _queue


def enqueue_user_evaluation(user_id: str, now_iso: Optional[str] = None, queue: Optional[Queue] = None) -> str:
    """
    Enqueue a scheduled evaluation for one user.

    Args:
        user_id: User whose active challenges are evaluated
        now_iso: Evaluation instant (ISO-8601); workers use their own clock when omitted
        queue: Override queue (tests)

    Returns:
        Job ID
    """
    q = queue or get_queue()
    job = q.enqueue(
        "finquest.workers.challenge_sweep.evaluate_user_job",
        user_id,
        now_iso,
        job_timeout="5m",
        result_ttl=3600,  # Keep result for 1 hour
    )
    return job.id
