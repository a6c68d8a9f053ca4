"""
Notification Dispatcher.

Side-effect events produced by the messaging core are handed to the
notification collaborator fire-and-forget: the caller never waits for the
backend and never sees its failures, which are only logged.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(self, backend=None, run_async=None, max_workers=None):
        self._backend = backend
        self.run_async = (
            getattr(settings, 'NOTIFICATIONS_ASYNC', True) if run_async is None else run_async
        )
        self.max_workers = max_workers or getattr(settings, 'NOTIFICATIONS_MAX_WORKERS', 2)
        self._executor = None

    @property
    def backend(self):
        if self._backend is None:
            backend_path = getattr(settings, 'NOTIFICATIONS_BACKEND', 'event_bus.backends.DummyBackend')
            self._backend = import_string(backend_path)()
        return self._backend

    def _get_executor(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix='notifications'
            )
        return self._executor

    def dispatch(self, payload):
        """Hand ``payload`` to the backend without propagating any failure."""
        if self.run_async:
            try:
                self._get_executor().submit(self._deliver, payload)
            except RuntimeError as e:
                logger.error(f"Could not schedule notification {payload!r}: {e}")
        else:
            self._deliver(payload)

    def dispatch_on_commit(self, payload):
        """Dispatch once the surrounding transaction commits."""
        transaction.on_commit(lambda: self.dispatch(payload))

    def _deliver(self, payload):
        try:
            self.backend.send(payload)
        except Exception:
            logger.exception(f"Notification dispatch failed for {payload!r}")

    def shutdown(self, wait=True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


_dispatcher = None


def get_dispatcher():
    """Get the process-wide dispatcher, creating it if needed."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
