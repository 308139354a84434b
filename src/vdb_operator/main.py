"""Main entry point for the VirtualDatabase operator."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .actions import ActionContext
from .builds import OpenShiftBuildTrigger, TarArtifactPackager
from .config import Config, ConfigurationError
from .engine import ReconcileEngine
from .keystore import Pkcs12KeystoreBuilder
from .manager import Controller, default_watch_sources
from .store import KubernetesStore, create_api_client
from .workloads import InfinispanCacheStore, KubernetesWorkloads, ServiceMonitorRegistrar

_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("kubernetes_asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting VirtualDatabase operator",
        extra={
            "operator_name": config.operator_name,
            "operator_version": config.operator_version,
            "namespace": config.watch_namespace or "*",
        },
    )

    try:
        api_client = await create_api_client(config)
    except Exception as e:
        logger.error(
            "Failed to load cluster credentials",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    try:
        store = KubernetesStore(api_client)
        context = ActionContext(
            config=config,
            resolver=store,
            builds=OpenShiftBuildTrigger(api_client),
            packager=TarArtifactPackager(),
            workloads=KubernetesWorkloads(api_client),
            keystores=Pkcs12KeystoreBuilder(),
            cache_store=InfinispanCacheStore(api_client),
            metrics=ServiceMonitorRegistrar(api_client),
        )
        engine = ReconcileEngine(store, context)
        controller = Controller(
            config, store, engine, watch_sources=default_watch_sources(api_client, config)
        )

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            controller.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await controller.run()
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1
    finally:
        await api_client.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
