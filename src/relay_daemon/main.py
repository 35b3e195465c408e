from __future__ import annotations

import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from relay_shared.config import load_relay_config

from .agent import AgentService, agent_router
from .agent.runtime.claude import ClaudeRuntime


def _configure_logging() -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="INFO",
        format="<level>{level: <8}</level> | <cyan>{name}</cyan> | {message}",
        colorize=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    config = load_relay_config()
    runtime = ClaudeRuntime(config.runtime.working_dir, cli_path=config.runtime.cli_path)

    service = AgentService(runtime=runtime, config=config)
    await service.start()
    app.state.config = config
    app.state.agent_service = service
    logger.info("Relay daemon started - working dir: {}", config.runtime.working_dir)

    yield

    await service.close_all()
    logger.info("Relay daemon shutdown")


app = FastAPI(title="Relay Daemon", version="0.1.0", lifespan=lifespan)
app.include_router(agent_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


def main():
    """Main entry point for the daemon"""
    import uvicorn

    _configure_logging()

    config = load_relay_config()
    host, port = config.server.host, config.server.port

    logger.info("Relay daemon listening on tcp://{}:{}", host, port)
    uvicorn.run(app, host=host, port=port, log_level="warning", access_log=False)


if __name__ == "__main__":
    main()
