# pyright: reportUnusedParameter=false

import asyncio
from typing import override
from aiohttp import web

from ..nodes.base_node import BaseNode
from ..utils.config import NodeConfig


class CacheNode(BaseNode):
    """Toy key-value node that caches a value per key for a limited time"""

    role: str = "cache"

    def __init__(self, config: NodeConfig | None = None):
        super().__init__(config)

        # Local cache: key -> value
        self.cache: dict[str, str] = {}
        self.expiry_handles: dict[str, asyncio.TimerHandle] = {}

        self.registered: bool = False

    @override
    def _setup_routes(self):
        super()._setup_routes()
        _ = self.app.router.add_get("/", self._handle_kv)

    @override
    async def start(self):
        await super().start()

        if self.config.proxy_url:
            await self._register_self()

    @override
    async def shutdown(self):
        if not self.running:
            return

        if self.registered:
            try:
                await self._unregister_self()
            except Exception as e:
                self.logger.error(f"Failed to unregister from proxy: {e}")

        for handle in self.expiry_handles.values():
            handle.cancel()
        self.expiry_handles.clear()

        await super().shutdown()

    @override
    def status(self) -> dict[str, object]:
        return {
            "address": self.config.advertise_address,
            "registered": self.registered,
            "cached_keys": len(self.cache),
        }

    def get(self, key: str) -> str:
        """Return the cached value for key, creating it on first access"""
        if key not in self.cache:
            val = f"hello: {key}"
            self.cache[key] = val
            self.logger.info(f"cached key: {{{key}: {val}}}")

            loop = asyncio.get_running_loop()
            self.expiry_handles[key] = loop.call_later(
                self.config.cache_expire, self._evict, key
            )

        return self.cache[key]

    def _evict(self, key: str) -> None:
        _ = self.expiry_handles.pop(key, None)
        val = self.cache.pop(key, None)
        self.logger.info(
            f"removed cached key after {self.config.cache_expire}s: {{{key}: {val}}}"
        )

    async def _register_self(self) -> None:
        """Register this node's address with the proxy.

        A 409 means the proxy still lists this address from an earlier run,
        so the node rejoins under it.
        """
        status = await self._call_proxy("register", accepted=(200, 409))
        if status == 409:
            self.logger.warning(
                f"{self.config.advertise_address} already registered, rejoining"
            )
        self.registered = True

    async def _unregister_self(self) -> None:
        _ = await self._call_proxy("unregister")
        self.registered = False

    async def _call_proxy(
        self, action: str, accepted: tuple[int, ...] = (200,)
    ) -> int:
        assert self.session is not None, "HTTP session not initialized"
        url = f"{self.config.proxy_url}/{action}"
        host = self.config.advertise_address

        async with self.session.get(url, params={"host": host}) as resp:
            if resp.status not in accepted:
                text = await resp.text()
                self.logger.error(f"Failed to {action} {host}: HTTP {resp.status} {text}")
                resp.raise_for_status()
            status = resp.status

        self.logger.info(f"{action} host: {host} success")
        return status

    async def _handle_kv(self, request: web.Request) -> web.Response:
        key = request.query.get("key")
        if not key:
            return web.Response(status=400, text="missing query parameter: key")

        return web.Response(text=self.get(key))
