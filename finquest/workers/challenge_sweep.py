"""Scheduled challenge sweep: re-evaluates recently active users and
every user holding an active challenge.

Invoked by an external scheduler (cron, k8s CronJob). Runs inline by default;
``--enqueue`` fans out one RQ job per user instead.
"""
import argparse
import logging
from datetime import datetime, timedelta
from typing import Optional

from finquest.core.config import settings
from finquest.core.logging import configure_logging
from finquest.core.metrics import challenge_sweep_users_total
from finquest.features.challenges.service import ChallengeService, get_challenge_service
from finquest.models.challenge import utc_now
from finquest.queue_client import enqueue_user_evaluation

logger = logging.getLogger("finquest.workers.challenge_sweep")


def _active_users(service: ChallengeService, now: datetime, activity_days: Optional[int]):
    days = activity_days if activity_days is not None else settings.CHALLENGE_SWEEP_ACTIVITY_DAYS
    recent = service.transactions.user_ids_active_since(now - timedelta(days=days))
    # Users with open challenges still need expiry and end-of-window completion
    return days, sorted(set(recent) | set(service.repository.user_ids_with_active()))


def run_challenge_sweep(
    *,
    now: Optional[datetime] = None,
    activity_days: Optional[int] = None,
    service: Optional[ChallengeService] = None,
) -> dict:
    """Evaluate each active user; one user's failure does not stop the others."""
    now = now or utc_now()
    service = service or get_challenge_service()
    days, user_ids = _active_users(service, now, activity_days)

    evaluated = failed = changed = 0
    for user_id in user_ids:
        try:
            changed += len(service.run_scheduled_evaluation(user_id, now=now))
        except Exception:
            failed += 1
            challenge_sweep_users_total.inc({"outcome": "failed"})
            logger.exception("[sweep] evaluation failed", extra={"user_id": user_id})
            continue
        evaluated += 1
        challenge_sweep_users_total.inc({"outcome": "evaluated"})

    summary = {
        "activity_days": days,
        "users": len(user_ids),
        "evaluated": evaluated,
        "failed": failed,
        "changed": changed,
        "as_of": now.isoformat(),
    }
    logger.info("[sweep] challenge sweep finished", extra=summary)
    return summary


def enqueue_challenge_sweep(
    *,
    now: Optional[datetime] = None,
    activity_days: Optional[int] = None,
    service: Optional[ChallengeService] = None,
    queue=None,
) -> dict:
    """Enqueue one evaluation job per active user instead of running inline."""
    now = now or utc_now()
    service = service or get_challenge_service()
    days, user_ids = _active_users(service, now, activity_days)
    job_ids = [enqueue_user_evaluation(user_id, now.isoformat(), queue=queue) for user_id in user_ids]
    challenge_sweep_users_total.inc({"outcome": "enqueued"}, amount=len(job_ids))
    logger.info("[sweep] enqueued challenge evaluations", extra={"users": len(user_ids)})
    return {"activity_days": days, "users": len(user_ids), "enqueued": len(job_ids), "job_ids": job_ids}


def evaluate_user_job(user_id: str, now_iso: Optional[str] = None) -> int:
    """RQ entry point: evaluate one user, return how many challenges changed."""
    now = datetime.fromisoformat(now_iso) if now_iso else None
    return len(get_challenge_service().run_scheduled_evaluation(user_id, now=now))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-evaluate challenges for active users")
    parser.add_argument("--enqueue", action="store_true", help="fan out per-user RQ jobs instead of running inline")
    parser.add_argument("--days", type=int, default=None, help="activity window in days")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    if args.enqueue:
        print(enqueue_challenge_sweep(activity_days=args.days))
    else:
        print(run_challenge_sweep(activity_days=args.days))
