# pyright: reportUnusedParameter=false

import asyncio
from typing import override
from aiohttp import web, ClientError

from ..core.consistent_hash import ConsistentHashRing
from ..core.errors import (
    HashRingError,
    HostAlreadyExists,
    HostNotFound,
)
from ..nodes.base_node import BaseNode
from ..utils.config import NodeConfig


class ForwardError(Exception):
    """Raised when the resolved host does not answer a forwarded request"""

    def __init__(self, host: str, reason: str):
        self.host: str = host
        super().__init__(f"forward to {host} failed: {reason}")


class ProxyNode(BaseNode):
    """HTTP facade routing keys to cache hosts through a consistent hash ring"""

    role: str = "proxy"

    def __init__(
        self,
        config: NodeConfig | None = None,
        ring: ConsistentHashRing | None = None,
    ):
        super().__init__(config)

        self.ring: ConsistentHashRing = ring or ConsistentHashRing(
            self.config.ring_config()
        )

        # Scheduled load releases for bounded lookups
        self.pending_releases: dict[asyncio.TimerHandle, str] = {}

        # Ring membership and collision events go to this node's log
        self.logger.attach("ringproxy.core")

        self.logger.info(
            f"ProxyNode ring: {self.ring.config.replica_num} replicas, "
            f"load bound factor {self.ring.config.load_bound_factor}"
        )

    @override
    def _setup_routes(self):
        super()._setup_routes()
        _ = self.app.router.add_get("/register", self._handle_register)
        _ = self.app.router.add_get("/unregister", self._handle_unregister)
        _ = self.app.router.add_get("/key", self._handle_key)
        _ = self.app.router.add_get("/key_least", self._handle_key_least)
        _ = self.app.router.add_get("/hosts", self._handle_hosts)
        _ = self.app.router.add_get("/loads", self._handle_loads)

    @override
    async def shutdown(self):
        if not self.running:
            return

        # Release every reservation still held
        for handle, host in list(self.pending_releases.items()):
            handle.cancel()
            self.ring.done(host)
        self.pending_releases.clear()

        await super().shutdown()

    @override
    def status(self) -> dict[str, object]:
        return {
            "hosts": self.ring.hosts(),
            "loads": self.ring.get_loads(),
            "max_load": self.ring.max_load(),
            "pending_releases": len(self.pending_releases),
        }

    def register_host(self, host: str) -> None:
        self.ring.register_host(host)
        self.logger.info(f"register host: {host} success")

    def unregister_host(self, host: str) -> None:
        self.ring.unregister_host(host)
        self.logger.info(f"unregister host: {host} success")

    async def get_key(self, key: str) -> str:
        """Forward key to the host the ring assigns it to"""
        host = self.ring.get_key(key)
        return await self._forward(host, key)

    async def get_key_least(self, key: str) -> str:
        """Forward key to the nearest host with spare capacity.

        The host's load is held for `release_after` seconds.
        """
        host = self.ring.get_key_least(key)
        self.ring.inc(host)
        self._schedule_release(host)
        return await self._forward(host, key)

    def _schedule_release(self, host: str) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def release() -> None:
            _ = self.pending_releases.pop(handle, None)
            self.logger.debug(
                f"dropping load on host {host} after {self.config.release_after}s"
            )
            self.ring.done(host)

        handle = loop.call_later(self.config.release_after, release)
        self.pending_releases[handle] = host

    async def _forward(self, host: str, key: str) -> str:
        assert self.session is not None, "HTTP session not initialized"

        try:
            async with self.session.get(f"http://{host}/", params={"key": key}) as resp:
                body = await resp.text()
                if resp.status != 200:
                    raise ForwardError(host, f"HTTP {resp.status}")
        except (ClientError, asyncio.TimeoutError) as e:
            raise ForwardError(host, str(e) or type(e).__name__) from e

        self.logger.debug(f"Response from host {host}: {body}")
        return body

    def _error_response(self, error: Exception) -> web.Response:
        if isinstance(error, HostAlreadyExists):
            status = 409
        elif isinstance(error, HostNotFound):
            status = 404
        elif isinstance(error, ForwardError):
            status = 502
        else:
            status = 500
        self.logger.warning(f"Request failed ({status}): {error}")
        return web.Response(status=status, text=str(error))

    async def _handle_register(self, request: web.Request) -> web.Response:
        host = request.query.get("host")
        if not host:
            return web.Response(status=400, text="missing query parameter: host")

        try:
            self.register_host(host)
        except HashRingError as e:
            return self._error_response(e)

        return web.Response(text=f"register host: {host} success")

    async def _handle_unregister(self, request: web.Request) -> web.Response:
        host = request.query.get("host")
        if not host:
            return web.Response(status=400, text="missing query parameter: host")

        try:
            self.unregister_host(host)
        except HashRingError as e:
            return self._error_response(e)

        return web.Response(text=f"unregister host: {host} success")

    async def _handle_key(self, request: web.Request) -> web.Response:
        key = request.query.get("key")
        if not key:
            return web.Response(status=400, text="missing query parameter: key")

        try:
            val = await self.get_key(key)
        except (HashRingError, ForwardError) as e:
            return self._error_response(e)

        return web.Response(text=f"key: {key}, val: {val}")

    async def _handle_key_least(self, request: web.Request) -> web.Response:
        key = request.query.get("key")
        if not key:
            return web.Response(status=400, text="missing query parameter: key")

        try:
            val = await self.get_key_least(key)
        except (HashRingError, ForwardError) as e:
            return self._error_response(e)

        return web.Response(text=f"key: {key}, val: {val}")

    async def _handle_hosts(self, request: web.Request) -> web.Response:
        return web.json_response({"hosts": self.ring.hosts()})

    async def _handle_loads(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"loads": self.ring.get_loads(), "max_load": self.ring.max_load()}
        )
