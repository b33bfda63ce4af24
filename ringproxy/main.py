"""
Command line entry point.

    ringproxy proxy -p 18888
    ringproxy server -p 8080 --proxy-url http://localhost:18888
"""

import argparse
import asyncio
import logging
import os
from dataclasses import replace

from .nodes.base_node import BaseNode
from .nodes.cache_node import CacheNode
from .nodes.proxy_node import ProxyNode
from .utils.config import NodeConfig

DEFAULT_PORTS = {"proxy": 18888, "server": 8080}


def build_config(args: argparse.Namespace) -> NodeConfig:
    """Load the base configuration and apply command line overrides"""
    config = NodeConfig.from_file(args.config) if args.config else NodeConfig.from_env()

    overrides: dict[str, object] = {}
    if args.port is not None:
        overrides["port"] = args.port
    elif not args.config and not os.getenv("NODE_PORT"):
        overrides["port"] = DEFAULT_PORTS[args.role]
    if args.host is not None:
        overrides["host"] = args.host
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.role == "server":
        if args.proxy_url is not None:
            overrides["proxy_url"] = args.proxy_url
        elif config.proxy_url is None:
            overrides["proxy_url"] = f"http://localhost:{DEFAULT_PORTS['proxy']}"

    if args.node_id is not None:
        overrides["node_id"] = args.node_id
    elif not args.config and not os.getenv("NODE_ID"):
        overrides["node_id"] = f"{args.role}-{overrides.get('port', config.port)}"

    config = replace(config, **overrides)
    config.validate()
    return config


def create_node(role: str, config: NodeConfig) -> BaseNode:
    if role == "proxy":
        return ProxyNode(config)
    return CacheNode(config)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Consistent hashing proxy with bounded loads"
    )
    parser.add_argument(
        "role", choices=["proxy", "server"], help="Run the proxy or a cache server"
    )
    parser.add_argument("-p", "--port", type=int, help="Port to listen on")
    parser.add_argument("--host", help="Host to bind to")
    parser.add_argument("--node-id", help="Node identifier")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument(
        "--proxy-url", help="Proxy to register with (server role only)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = build_config(args)

    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    node = create_node(args.role, config)
    asyncio.run(node.run_forever())


if __name__ == "__main__":
    main()
