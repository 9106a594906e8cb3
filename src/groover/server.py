"""Groover operator process.

Main entry point that:
1. Loads configuration and configures logging
2. Connects Redis, NATS, Kubernetes and the credential service
3. Starts the worker failure reconciler
4. Connects the Discord gateway and the voice event bridge
5. Subscribes the command router
6. Serves HTTP health check endpoints
7. Runs until SIGINT/SIGTERM
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

import nats
from aiohttp.web import Application, AppRunner, TCPSite
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config

from groover.bridge import VoiceEventBridge
from groover.config import OperatorConfig
from groover.context import OperatorContext
from groover.gateway import GatewayClient
from groover.health import setup_health_routes
from groover.lifecycle import WorkerLifecycle
from groover.relay import CredentialRelay
from groover.router import CommandRouter
from groover.state import StateGuard
from groover.supervisor import WorkerSupervisor
from groover.template import WorkerTemplate

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs") / "operator.yaml"


async def _load_kubernetes(config: OperatorConfig) -> k8s_client.ApiClient:
    if config.kubernetes.in_cluster:
        k8s_config.load_incluster_config()
    else:
        await k8s_config.load_kube_config()
    return k8s_client.ApiClient()


async def start_operator(config_path: Path | None) -> None:
    """Start the operator and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults + env if missing)

    Raises:
        ValueError: If required settings are missing
        StateStoreError: If Redis is unreachable at startup
    """
    config = OperatorConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})
    config.require_runtime_settings()

    context = OperatorContext(config=config)

    state = StateGuard(
        redis_url=config.redis.url,
        password=config.redis.password,
        db=config.redis.db,
        registration_key_prefix=config.redis.registration_key_prefix,
        authorization_key_prefix=config.redis.authorization_key_prefix,
        connection_pool_size=config.redis.connection_pool_size,
    )
    relay = CredentialRelay(config.credentials)

    api_client: k8s_client.ApiClient | None = None
    gateway: GatewayClient | None = None
    router: CommandRouter | None = None
    runner: AppRunner | None = None
    gateway_task: asyncio.Task[None] | None = None
    background: list[asyncio.Task[Any]] = []

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    try:
        await state.connect()

        logger.info("Connecting to NATS", extra={"url": config.nats.url})
        context.bus = await nats.connect(
            config.nats.url, connect_timeout=config.nats.connect_timeout_s
        )

        api_client = await _load_kubernetes(config)
        template = WorkerTemplate.from_file(
            config.kubernetes.template_path, name_prefix=config.kubernetes.worker_name_prefix
        )
        supervisor = WorkerSupervisor(
            k8s_client.CoreV1Api(api_client),
            template,
            namespace=config.kubernetes.namespace,
            watch_timeout_seconds=config.kubernetes.watch_timeout_seconds,
            reconnect_backoff_s=config.kubernetes.reconnect_backoff_s,
        )
        lifecycle = WorkerLifecycle(
            state, relay, supervisor, reservation_ttl_s=config.redis.reservation_ttl_seconds
        )

        bridge = VoiceEventBridge(context)
        gateway = GatewayClient(context, bridge)
        router = CommandRouter(context, state, relay, lifecycle, gateway)

        if config.health.enabled:
            health_app = Application()
            setup_health_routes(health_app, state, context.bus)
            runner = AppRunner(health_app)
            await runner.setup()
            await TCPSite(runner, config.health.host, config.health.port).start()
            logger.info("Health check server started", extra={"port": config.health.port})

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        reconciler_task = asyncio.create_task(supervisor.run_reconciler())
        stop_task = asyncio.create_task(stop_event.wait())
        background = [reconciler_task, stop_task]
        gateway_task = asyncio.create_task(gateway.start(config.discord.token or ""))

        await router.subscribe()
        logger.info("Groover operator ready", extra={"namespace": config.kubernetes.namespace})

        done, _ = await asyncio.wait(
            {stop_task, gateway_task, reconciler_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if stop_task in done:
            logger.info("Received termination signal")
        for task in done - {stop_task}:
            if not task.cancelled() and task.exception() is not None:
                logger.error("Background task failed", exc_info=task.exception())
    finally:
        logger.info("Shutting down groover operator")

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

        if router is not None:
            await router.close()

        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        if gateway is not None:
            await gateway.close()
        if gateway_task is not None:
            await asyncio.gather(gateway_task, return_exceptions=True)

        if runner is not None:
            await runner.cleanup()

        if context.bus is not None:
            await context.bus.drain()
        await relay.close()
        if api_client is not None:
            await api_client.close()
        await state.disconnect()

        logger.info("Groover operator stopped")


def main() -> None:
    """Entry point for the groover operator."""
    parser = argparse.ArgumentParser(description="Groover worker lifecycle operator")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to operator config YAML file (defaults + env vars if missing)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_operator(args.config))
    except KeyboardInterrupt:
        logger.info("Groover operator interrupted")


if __name__ == "__main__":
    main()
