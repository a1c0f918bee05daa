"""
CLI entrypoint for the lxd2etcd daemon.

Loads the YAML configuration through Dynaconf, configures logging, installs
the signal handlers (SIGINT/SIGTERM stop, SIGUSR2 cycles verbosity) and runs
the orchestrator until shutdown.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import platform
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from . import __build__, __version__
from .core.config import DEFAULT_CONFIG_FILE, ConfigError, ConfigService
from .core.control import TRACE, ServiceControl
from .core.orchestrator import Orchestrator

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def _cli_level(args: argparse.Namespace) -> int | None:
    if args.trace:
        return TRACE
    if args.debug:
        return logging.DEBUG
    return None


def version_text() -> str:
    return (
        f"lxd2etcd {__version__}\n"
        f"build: {__build__}\n"
        f"python: {platform.python_implementation()} {platform.python_version()}"
    )


def _install_signal_handlers(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
        orchestrator.request_shutdown()

    def _toggle_debug(sig_name: str) -> None:
        LOGGER.debug("Received %s.", sig_name)
        orchestrator.toggle_debug()

    handlers = [(signal.SIGINT, _request_shutdown), (signal.SIGTERM, _request_shutdown)]
    if hasattr(signal, "SIGUSR2"):
        handlers.append((signal.SIGUSR2, _toggle_debug))
    for sig, callback in handlers:
        try:
            loop.add_signal_handler(sig, callback, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, cb=callback, sig_name=sig.name: loop.call_soon_threadsafe(
                    cb, sig_name or str(signum)
                ),
            )


async def run_service(config_service: ConfigService, *, control: ServiceControl) -> int:
    """Run the daemon until a shutdown signal; returns the process exit code."""

    orchestrator = Orchestrator(config_service.snapshot, control=control)
    _install_signal_handlers(orchestrator)
    error = await orchestrator.run()
    if error is not None:
        LOGGER.error("lxd2etcd stopped with an unresolved error: %s", error)
        return 1
    return 0


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lxd2etcd",
        description="Mirror LXD container and network state into etcd.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE}).",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "-t", "--trace", action="store_true", help="Enable trace logging (implies --debug)."
    )
    parser.add_argument(
        "-v", "--version", action="store_true", help="Print version information and exit."
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file, rotated by size.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    if args.version:
        print(version_text())
        return 0

    cli_level = _cli_level(args)
    configure_logging(cli_level or logging.INFO)
    try:
        config_service = ConfigService(config_file=args.config)
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2

    snapshot = config_service.snapshot
    control = ServiceControl()
    if cli_level is None and snapshot.debug:
        control.set_level(logging.DEBUG)
    log_file = args.log_file or snapshot.logging.file
    if log_file is not None:
        _ensure_rotating_file_handler(
            Path(log_file),
            max_mb=snapshot.logging.max_mb,
            backup_count=snapshot.logging.backup_count,
        )
    LOGGER.debug("configuration loaded from %s:\n%s", config_service.config_file, snapshot.describe())

    try:
        return asyncio.run(run_service(config_service, control=control))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("lxd2etcd crashed.")
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())


__all__ = ["configure_logging", "main", "parse_args", "run_service", "version_text"]
