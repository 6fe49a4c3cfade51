"""Progress publishing and completion notification.

Both collaborators are fire-and-forget: the orchestrator calls them through
:func:`safe_publish` / :func:`safe_notify`, which log and swallow any error
so that a broken subscriber or webhook never fails a job.

:class:`ProgressBroker` is the in-memory pub/sub used by the HTTP API. The
pipeline publishes from worker threads; each SSE client owns an
``asyncio.Queue`` bound to the event loop it subscribed from.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from typing import AsyncIterator, Protocol

import httpx

from .models import Job

logger = logging.getLogger(__name__)

TERMINAL_STEPS = ("completed", "failed")


class ProgressPublisher(Protocol):
    def publish(self, job_id: str, event: dict) -> None: ...


class Notifier(Protocol):
    def notify_completed(self, job: Job) -> None: ...


def safe_publish(publisher: ProgressPublisher | None, job_id: str, event: dict) -> None:
    if publisher is None:
        return
    try:
        publisher.publish(job_id, event)
    except Exception as exc:
        logger.warning("Progress publish failed for job %s: %s", job_id, exc)


def safe_notify(notifier: Notifier | None, job: Job) -> None:
    if notifier is None:
        return
    try:
        notifier.notify_completed(job)
    except Exception as exc:
        logger.warning("Completion notification failed for job %s: %s", job.job_id, exc)


class NullPublisher:
    def publish(self, job_id: str, event: dict) -> None:
        pass


class ProgressBroker:
    """Broadcast progress events to every subscriber of a job."""

    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._subscribers: dict[str, list[tuple[asyncio.Queue, asyncio.AbstractEventLoop]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, []))

    def publish(self, job_id: str, event: dict) -> None:
        """Thread-safe; slow clients lose events instead of blocking the pipeline."""
        with self._lock:
            targets = list(self._subscribers.get(job_id, []))
        for queue, loop in targets:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_offer, queue, event)

    async def subscribe(self, job_id: str) -> AsyncIterator[dict]:
        """Yield events for *job_id* until a terminal step is seen."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        entry = (queue, asyncio.get_running_loop())
        with self._lock:
            self._subscribers[job_id].append(entry)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.get("step") in TERMINAL_STEPS:
                    break
        finally:
            with self._lock:
                subs = self._subscribers.get(job_id, [])
                if entry in subs:
                    subs.remove(entry)
                if not subs:
                    self._subscribers.pop(job_id, None)


def _offer(queue: asyncio.Queue, event: dict) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("Dropping progress event for a slow subscriber")


class LogNotifier:
    def notify_completed(self, job: Job) -> None:
        logger.info("Job %s completed: %s pages, quality %s", job.job_id, job.page_count,
                    job.quality.value if job.quality else "n/a")


class WebhookNotifier:
    """POST a small JSON summary of a completed job to a callback URL."""

    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def notify_completed(self, job: Job) -> None:
        payload = {
            "job_id": job.job_id,
            "project_id": job.project_id,
            "status": job.status.value,
            "page_count": job.page_count,
            "quality": job.quality.value if job.quality else None,
            "output_pdf_key": job.output_pdf_key,
        }
        response = self._client.post(self.url, json=payload)
        if response.status_code >= 400:
            logger.warning("Completion webhook returned %d: %s", response.status_code, response.text[:200])
        else:
            logger.info("Completion webhook sent for job %s", job.job_id)

    def close(self) -> None:
        self._client.close()


def build_notifier(url: str) -> Notifier:
    return WebhookNotifier(url) if url else LogNotifier()
