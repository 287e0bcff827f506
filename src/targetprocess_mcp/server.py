from __future__ import annotations

import asyncio

from mcp.server.fastmcp import FastMCP

from targetprocess_mcp.core.config import create_client_from_env, load_env_config
from targetprocess_mcp.core.logging import setup_logging
from targetprocess_mcp.core.registry import register_discovered_tools


def build_app(client) -> FastMCP:
    app = FastMCP("targetprocess-mcp")
    register_discovered_tools(app, lambda: client)
    return app


async def main() -> None:
    setup_logging(load_env_config().log_level)
    client = create_client_from_env(use_dotenv=False)

    app = build_app(client)
    try:
        await app.run_stdio_async()
    finally:
        await client.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
