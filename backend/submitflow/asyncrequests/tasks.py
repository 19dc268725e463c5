"""Celery tasks for async request housekeeping."""

from __future__ import annotations

from celery import shared_task

from submitflow.asyncrequests.reaper import AsyncRequestReaper


@shared_task
def reap_expired_async_requests() -> dict[str, int]:
    """Delete request records past their TTL."""
    reaper = AsyncRequestReaper()
    return reaper.reap()


@shared_task
def recover_stalled_async_requests() -> dict[str, int]:
    """Fail processing records whose lease expired with nothing executing them."""
    reaper = AsyncRequestReaper()
    return reaper.recover_stalled()
