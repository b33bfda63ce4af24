# pyright: reportUnusedParameter=false

import asyncio
import signal
from aiohttp import web, ClientSession, ClientTimeout, TCPConnector

from ..utils.config import NodeConfig
from ..utils.logger import NodeLogger, init_logger


class BaseNode:
    """Base class for HTTP nodes: web server, client session and lifecycle"""

    role: str = "node"

    def __init__(self, config: NodeConfig | None = None):
        if config is None:
            config = NodeConfig.from_env()
        config.validate()

        self.config: NodeConfig = config
        self.logger: NodeLogger = init_logger(
            self.config.node_id, self.role, self.config.log_level, self.config.log_dir
        )
        self.node_id: str = self.config.node_id

        # Network state
        self.app: web.Application = web.Application()
        self.runner: web.AppRunner | None = None
        self.session: ClientSession | None = None

        # Shutdown flag
        self.running: bool = False

        self._setup_routes()

        self.logger.info(
            f"{type(self).__name__} initialized: {self.node_id} on port {self.config.port}"
        )

    def _setup_routes(self):
        """Setup HTTP routes shared by every node"""
        _ = self.app.router.add_get("/health", self._handle_health)
        _ = self.app.router.add_get("/status", self._handle_status)

    async def start(self):
        """Start the node server"""
        self.running = True

        timeout = ClientTimeout(total=self.config.request_timeout, connect=5)
        connector = TCPConnector(limit=100, limit_per_host=30)
        self.session = ClientSession(timeout=timeout, connector=connector)

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.config.host, self.config.port)
        await site.start()

        self.logger.info(f"Node started on {self.config.host}:{self.config.port}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

    async def shutdown(self):
        """Graceful shutdown"""
        if not self.running:
            return

        self.logger.info("Shutting down node...")
        self.running = False

        if self.session:
            await self.session.close()

        if self.runner:
            await self.runner.cleanup()

        self.logger.info("Node shutdown complete")
        self.logger.close()

    def status(self) -> dict[str, object]:
        """Node specific fields for the status endpoint"""
        return {}

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint"""
        return web.json_response(
            {
                "node_id": self.node_id,
                "role": self.role,
                "status": "healthy" if self.running else "shutting_down",
            }
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Detailed status endpoint"""
        data: dict[str, object] = {
            "node_id": self.node_id,
            "role": self.role,
            "running": self.running,
        }
        data.update(self.status())
        return web.json_response(data)

    async def run_forever(self):
        """Run the node until shutdown"""
        try:
            await self.start()

            while self.running:
                await asyncio.sleep(1)
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            await self.shutdown()
