#!/usr/bin/env python3
"""GPU Fan Curve and Power Limit Daemon

Keeps one NVIDIA GPU on a fan curve, and optionally under a power ceiling,
using NVML.

Features:
- Configuration loaded from YAML.
- GPU selected by index, UUID or name substring.
- Unattended retry with backoff on driver/hardware errors.
- Health scoring and threshold alerts on every poll.
- Dry-run and single-use modes.
- Clean shutdown on SIGTERM and Ctrl+C, optionally handing fans back to the driver.
"""

import argparse
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from . import __version__
from .alerts import LogNotifier
from .config import LOG_LEVELS, ConfigManager, find_config_file
from .daemon import ControlDaemon
from .errors import ConfigurationError, GpuCtlError, GpuNotFoundError
from .nvml import NvmlSession

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2


def setup_logging(log_file_path: Optional[str], log_level_str: str = "INFO") -> None:
    """Configure logging system for both file and console output."""
    log_level = getattr(logging, log_level_str.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file_path:
        try:
            handlers.append(RotatingFileHandler(log_file_path, maxBytes=LOG_MAX_BYTES,
                                                backupCount=LOG_BACKUPS))
        except OSError as e:
            # Not fatal: stdout still reaches journald.
            print(f"[WARN] Cannot open log file {log_file_path}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(levelname)s] %(module)s: %(message)s',
        datefmt='%H:%M:%S',
        handlers=handlers,
        force=True,
    )
    logging.debug("Logging initialized at level %s", log_level_str.upper())


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="NVIDIA GPU fan curve and power limit daemon.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML configuration file. If not provided, searches in standard locations."
    )
    parser.add_argument(
        "--gpu",
        default=None,
        help="GPU index, UUID or name substring. Overrides the configuration file."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute and log targets without changing the hardware."
    )
    parser.add_argument(
        "--single-use",
        action="store_true",
        help="Run one control cycle and exit."
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=LOG_LEVELS,
        help="Set the logging level. Overrides the configuration file."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def load_config(path: Optional[str]) -> ConfigManager:
    """Load the configuration file, or defaults when none is found."""
    config_file_path = find_config_file(path)
    if not config_file_path:
        return ConfigManager()
    return ConfigManager(config_file_path)


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Process exit code: 0 on a clean stop, 2 on a configuration error,
        1 on any other failure
    """
    args = parse_args(argv)

    try:
        config = load_config(args.config)
        setup_logging(config.log_file, args.log_level or config.log_level)
        settings = config.settings(dry_run=args.dry_run or None,
                                   single_use=args.single_use or None)
    except ConfigurationError as e:
        print(f"[ERR] {e}", file=sys.stderr)
        return EXIT_CONFIG

    logging.info("Using configuration from: %s", config.config_path or "built-in defaults")
    selector = args.gpu if args.gpu is not None else config.gpu
    notifier = LogNotifier()

    try:
        with NvmlSession() as session:
            device = session.open_selector(selector)
            daemon = ControlDaemon(device, settings)

            def _stop(signum, _frame):
                logging.info("Received %s, stopping", signal.Signals(signum).name)
                daemon.cancel()

            previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGTERM, signal.SIGINT)}
            try:
                logging.info("Starting control loop on %s. Press Ctrl+C to exit.", device.handle)
                daemon.run()
                logging.info("Exited cleanly.")
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
    except ConfigurationError as e:
        logging.critical("Configuration error: %s", e)
        return EXIT_CONFIG
    except GpuNotFoundError as e:
        logging.critical("%s", e)
        return EXIT_ERROR
    except GpuCtlError as e:
        logging.critical("Fatal error: %s", e)
        return EXIT_ERROR
    finally:
        notifier.close()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
