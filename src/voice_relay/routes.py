"""Route registry: per-participant output routes and relay stream tasks.

A route is the published output channel that carries one participant's
transformed voice back into the session. The registry is the single source
of truth for route existence; a missing route means "do not publish".

Invariants:
- At most one route per participant identity; a route's channel is never
  shared between participants.
- At most one active stream per identity; duplicate starts are no-ops.
  A stream started while a stopped one is still exiting waits for it.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from voice_relay.transport.base import OutputChannel, TrackPublisher

logger = logging.getLogger(__name__)


class RouteError(Exception):
    """Base exception for route operations."""

    pass


class RoutePublishError(RouteError):
    """Raised when a route's output channel could not be published."""

    pass


@dataclass
class Route:
    """Output route for one participant."""

    identity: str
    route_key: str
    voice_id: str
    channel: OutputChannel


@dataclass
class StreamHandle:
    """A running per-speaker relay task."""

    identity: str
    task: asyncio.Task | None = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def stopped(self) -> bool:
        """True once a cooperative stop was requested."""
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()


class RouteRegistry:
    """Owns identity → Route and identity → StreamHandle mappings.

    Route insert/remove/recreate run under one asyncio.Lock so concurrent
    join/leave/recovery for the same identity cannot interleave. Stream
    bookkeeping is synchronous and therefore atomic on the event loop.
    """

    def __init__(self, publisher: TrackPublisher, route_prefix: str = "from-") -> None:
        """Initialize the registry.

        Args:
            publisher: Creates and removes published output channels
            route_prefix: Prefix of the deterministic track name per identity
        """
        self._publisher = publisher
        self._route_prefix = route_prefix
        self._routes: dict[str, Route] = {}
        self._streams: dict[str, StreamHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    def route_key(self, identity: str) -> str:
        return f"{self._route_prefix}{identity}"

    # Routes

    def get(self, identity: str) -> Route | None:
        return self._routes.get(identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._routes

    def __len__(self) -> int:
        return len(self._routes)

    @property
    def identities(self) -> list[str]:
        return list(self._routes)

    async def create_route(self, identity: str, voice_id: str) -> Route:
        """Publish a fresh output channel for ``identity`` and register it.

        An existing route for the identity is unpublished first.

        Raises:
            RoutePublishError: If publishing fails; no route is registered
        """
        async with self._lock:
            old = self._routes.pop(identity, None)
            if old is not None:
                await self._discard(old)
            return await self._publish(identity, voice_id)

    async def recreate_route(self, identity: str) -> Route:
        """Replace the route of ``identity`` with a freshly published one.

        The old channel is unpublished (errors ignored) and a new one is
        published with the same voice.

        Raises:
            RouteError: If no route exists for the identity
            RoutePublishError: If publishing the replacement fails
        """
        async with self._lock:
            old = self._routes.pop(identity, None)
            if old is None:
                raise RouteError(f"No route to recreate for {identity}")
            await self._discard(old)
            route = await self._publish(identity, old.voice_id)

        logger.info(
            "Route recreated",
            extra={"identity": identity, "voice_id": route.voice_id},
        )
        return route

    async def remove_route(self, identity: str) -> bool:
        """Unpublish and forget the route of ``identity``.

        Returns:
            True if a route was removed, False if none existed
        """
        async with self._lock:
            route = self._routes.pop(identity, None)
            if route is None:
                return False
            await self._discard(route)

        logger.info("Route removed", extra={"identity": identity})
        return True

    async def clear(self, unpublish: bool = True) -> None:
        """Drop every route, unpublishing them unless the session is gone."""
        async with self._lock:
            routes = list(self._routes.values())
            self._routes.clear()
            if unpublish:
                for route in routes:
                    await self._discard(route)

    async def _publish(self, identity: str, voice_id: str) -> Route:
        route_key = self.route_key(identity)
        try:
            channel = await self._publisher.publish(route_key)
        except Exception as e:
            raise RoutePublishError(f"Failed to publish route {route_key}: {e}") from e

        route = Route(identity=identity, route_key=route_key, voice_id=voice_id, channel=channel)
        self._routes[identity] = route
        return route

    async def _discard(self, route: Route) -> None:
        try:
            await self._publisher.unpublish(route.channel)
        except Exception as e:
            logger.warning(
                "Failed to unpublish route",
                extra={"identity": route.identity, "route": route.route_key, "error": str(e)},
            )

    # Stream tasks

    def is_streaming(self, identity: str) -> bool:
        """True if ``identity`` has a stream that has not been asked to stop."""
        handle = self._streams.get(identity)
        return handle is not None and not handle.stopped

    @property
    def streaming_identities(self) -> list[str]:
        return [identity for identity, handle in self._streams.items() if not handle.stopped]

    def start_stream(
        self,
        identity: str,
        factory: Callable[[StreamHandle], Coroutine[Any, Any, None]],
    ) -> StreamHandle | None:
        """Start the relay task for ``identity`` unless one is already running.

        If the previous stream was asked to stop but its task has not exited
        yet, the new task waits for it before running, so the two never
        overlap.

        Args:
            identity: Speaker identity
            factory: Builds the relay coroutine from its handle

        Returns:
            The new handle, or None if an active stream already exists
        """
        previous = self._streams.get(identity)
        if previous is not None and not previous.stopped:
            return None

        handle = StreamHandle(identity)
        self._streams[identity] = handle
        handle.task = asyncio.create_task(
            self._run_after(previous, handle, factory), name=f"relay-{identity}"
        )
        self._tasks.add(handle.task)
        handle.task.add_done_callback(lambda _task: self._release(handle))
        return handle

    def stop_stream(self, identity: str) -> bool:
        """Ask the stream of ``identity`` to stop at its next chunk boundary.

        The task keeps running until it reaches the boundary; a stream
        started meanwhile for the same identity waits for it.

        Returns:
            True if a stream was signalled, False if none existed
        """
        handle = self._streams.get(identity)
        if handle is None:
            return False
        handle.request_stop()
        return True

    async def cancel_all_streams(self) -> None:
        """Cancel every stream task and wait for them to finish."""
        for handle in self._streams.values():
            handle.request_stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._streams.clear()

    async def _run_after(
        self,
        previous: StreamHandle | None,
        handle: StreamHandle,
        factory: Callable[[StreamHandle], Coroutine[Any, Any, None]],
    ) -> None:
        if previous is not None and previous.task is not None and not previous.task.done():
            logger.debug("Waiting for stopped stream to exit", extra={"identity": handle.identity})
            await asyncio.wait({previous.task})
        await factory(handle)

    def _release(self, handle: StreamHandle) -> None:
        if handle.task is not None:
            self._tasks.discard(handle.task)
        if self._streams.get(handle.identity) is handle:
            del self._streams[handle.identity]
