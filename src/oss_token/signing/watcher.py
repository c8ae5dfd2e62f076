"""Resolve signing requests from the provider's status channel with REST fallback."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from ..config import Settings, get_settings
from ..errors import ServiceError
from .client import SigningProvider, SigningRequest, SigningStatus

logger = logging.getLogger(__name__)


StatusCallback = Callable[[SigningStatus], Awaitable[None]]


def is_terminal_message(raw: str | bytes) -> bool:
    """True when a status-channel frame says the request was resolved."""

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        logger.debug("watcher.invalid_json", extra={"raw": str(raw)[:100]})
        return False
    if not isinstance(payload, dict):
        return False
    return "signed" in payload or payload.get("expired") is True


class SigningStatusWatcher:
    """Tracks outstanding signing requests without waiting for the webhook.

    The status channel only says *that* something happened; the outcome is
    always re-read through the authenticated REST API before the callback
    runs.
    """

    def __init__(self, provider: SigningProvider, callback: StatusCallback, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._provider = provider
        self._callback = callback
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._backoff_base = 2
        self._backoff_max = 60

    def track(self, request: SigningRequest, ttl_seconds: int) -> None:
        if request.ref in self._tasks:
            return
        task = asyncio.create_task(self._resolve(request, ttl_seconds), name=f"signing-{request.ref}")
        self._tasks[request.ref] = task
        task.add_done_callback(lambda _: self._tasks.pop(request.ref, None))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _resolve(self, request: SigningRequest, ttl_seconds: int) -> None:
        # a little past the TTL so the provider's own expiry is observed
        deadline = ttl_seconds + self._settings.signing_poll_interval_sec * 2
        try:
            status = await asyncio.wait_for(self._wait_for_resolution(request), timeout=deadline)
        except asyncio.TimeoutError:
            logger.info("watcher.timeout", extra={"ref": request.ref})
            return
        try:
            await self._callback(status)
        except ServiceError as exc:
            logger.warning("watcher.callback_rejected", extra={"ref": request.ref, "error": exc.message})
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("watcher.callback_failure", exc_info=exc)

    async def _wait_for_resolution(self, request: SigningRequest) -> SigningStatus:
        waiters = [asyncio.create_task(self._poll(request.ref))]
        if request.status_channel:
            waiters.append(asyncio.create_task(self._listen(request)))
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            return done.pop().result()
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _poll(self, ref: str) -> SigningStatus:
        interval = self._settings.signing_poll_interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                status = await self._provider.get_status(ref)
            except ServiceError as exc:
                logger.warning("watcher.poll_error", extra={"ref": ref, "error": exc.message})
                continue
            if status.resolved:
                return status

    async def _listen(self, request: SigningRequest) -> SigningStatus:
        backoff = 1
        while True:
            try:
                async with websockets.connect(str(request.status_channel)) as ws:
                    backoff = 1
                    async for raw in ws:
                        if is_terminal_message(raw):
                            try:
                                status = await self._provider.get_status(request.ref)
                            except ServiceError as exc:
                                logger.warning("watcher.status_error", extra={"ref": request.ref, "error": exc.message})
                                continue
                            if status.resolved:
                                return status
            except (OSError, WebSocketException) as exc:  # pragma: no cover - network failures
                logger.warning("watcher.connection_error", extra={"ref": request.ref, "error": str(exc)})
            await asyncio.sleep(backoff)
            backoff = min(backoff * self._backoff_base, self._backoff_max)
