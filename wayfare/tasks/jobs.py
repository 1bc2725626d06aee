from wayfare.tasks.celery_app import celery
from wayfare.tasks import worker_jobs

@celery.task(name="wayfare.tasks.jobs.reconcile_pending_items")
def reconcile_pending_items():
    return worker_jobs.reconcile_pending_items()

@celery.task(name="wayfare.tasks.jobs.sync_confirmed_items")
def sync_confirmed_items():
    return worker_jobs.sync_confirmed_items()


@celery.task(name="wayfare.tasks.jobs.retry_failed_captures")
def retry_failed_captures(limit: int = 50):
    return worker_jobs.retry_failed_captures(limit=limit)


@celery.task(name="wayfare.tasks.jobs.expire_checkout_sessions")
def expire_checkout_sessions():
    return worker_jobs.expire_checkout_sessions()


@celery.task(name="wayfare.tasks.jobs.abandon_expired_carts")
def abandon_expired_carts():
    return worker_jobs.abandon_expired_carts()


@celery.task(name="wayfare.tasks.jobs.complete_finished_bookings")
def complete_finished_bookings():
    return worker_jobs.complete_finished_bookings()


@celery.task(name="wayfare.tasks.jobs.deliver_notifications")
def deliver_notifications(limit: int = 50):
    return worker_jobs.deliver_notifications(limit=limit)
