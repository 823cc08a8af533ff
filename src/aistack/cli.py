"""
Command-line entry point.

Usage:
    aistack start-all [--force] [--skip-health-check] [--yes]
    aistack stop-all [--force]
    aistack status [ollama|webui] [--verbose] [--json]
    aistack start {ollama,webui} [--skip-health-check]
    aistack stop {ollama,webui} [--force]

Exit codes: 0 full success, 1 any failure, 2 usage or configuration error,
130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .config import SERVICE_NAMES, ConfigurationError, StackSettings, ensure_directories, load_settings
from .errors import OperationCancelledError, SupervisorError
from .logging_config import setup_logging
from .models import OverallState, ServiceHandle, StackReport, StackStatus
from .orchestrator import Confirm, StackOrchestrator
from .supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

_MUTATING_COMMANDS = {"start-all", "stop-all", "start", "stop"}
_ALIASES = {f"{action}-{service}": (action, service) for action in ("start", "stop") for service in SERVICE_NAMES}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aistack", description="Supervise a local Ollama + Open WebUI stack")
    parser.add_argument("--data-root", type=Path, default=None, help="Data root (default: AISTACK_DATA_ROOT or ~/.aistack)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start_all = commands.add_parser("start-all", help="Start Ollama, then Open WebUI")
    start_all.add_argument("--force", action="store_true", help="Do not ask before touching running services")
    start_all.add_argument("--skip-health-check", action="store_true", help="Return once processes survive launch")
    start_all.add_argument("--yes", "-y", action="store_true", help="Answer yes to the running-service prompt")

    stop_all = commands.add_parser("stop-all", help="Stop Open WebUI, then Ollama")
    stop_all.add_argument("--force", action="store_true", help="Skip the graceful shutdown wait")

    status = commands.add_parser("status", help="Report process, port and health state")
    status.add_argument("service", nargs="?", choices=SERVICE_NAMES, help="Limit the report to one service")
    status.add_argument("--verbose", "-v", action="store_true", help="Include PID, memory, uptime and service details")
    status.add_argument("--json", action="store_true", help="Machine-readable output")

    start = commands.add_parser("start", help="Start one service")
    start.add_argument("service", choices=SERVICE_NAMES)
    start.add_argument("--skip-health-check", action="store_true", help="Return once the process survives launch")

    stop = commands.add_parser("stop", help="Stop one service")
    stop.add_argument("service", choices=SERVICE_NAMES)
    stop.add_argument("--force", action="store_true", help="Skip the graceful shutdown wait")

    for service in SERVICE_NAMES:
        alias = commands.add_parser(f"start-{service}", help=f"Same as 'start {service}'")
        alias.add_argument("--skip-health-check", action="store_true")
        alias = commands.add_parser(f"stop-{service}", help=f"Same as 'stop {service}'")
        alias.add_argument("--force", action="store_true")

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse arguments, folding the per-service aliases into start/stop."""
    args = build_parser().parse_args(argv)
    if args.command in _ALIASES:
        args.command, args.service = _ALIASES[args.command]
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.data_root)
    except ConfigurationError as exc:
        sys.stderr.write(f"Configuration error: {exc}\n")
        return EXIT_USAGE

    level = getattr(logging, args.log_level)
    log_dir = settings.log_dir if args.command in _MUTATING_COMMANDS else None
    setup_logging(log_dir, level=level, user_friendly=level > logging.DEBUG)

    try:
        return asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


async def run_command(
    args: argparse.Namespace,
    settings: StackSettings,
    orchestrator: Optional[StackOrchestrator] = None,
) -> int:
    """Execute a parsed command and return its exit code."""
    cancel_event = asyncio.Event()
    handler_installed = _install_termination_handler(cancel_event)
    if orchestrator is None:
        orchestrator = StackOrchestrator(settings, ServiceSupervisor(settings, cancel_event=cancel_event))

    try:
        if args.command in ("start-all", "start"):
            ensure_directories(settings, include_services=False)
        return await _dispatch(args, orchestrator)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_USAGE
    except OperationCancelledError as exc:
        logger.warning("Aborted: %s", exc)
        return EXIT_INTERRUPTED
    except SupervisorError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE
    finally:
        if handler_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM)


async def _dispatch(args: argparse.Namespace, orchestrator: StackOrchestrator) -> int:
    command = args.command
    if command == "start-all":
        report = await orchestrator.start_all(
            force=args.force,
            wait_for_ready=not args.skip_health_check,
            confirm=_confirm_callback(args.yes),
        )
        _print_report(report, orchestrator)
        return report.exit_code
    if command == "stop-all":
        report = await orchestrator.stop_all(graceful_timeout=0.0 if args.force else None)
        _print_report(report, orchestrator, show_urls=False)
        return report.exit_code
    if command == "start":
        report = await orchestrator.start_service(args.service, wait_for_ready=not args.skip_health_check)
        _print_report(report, orchestrator)
        return report.exit_code
    if command == "stop":
        report = await orchestrator.stop_service(args.service, graceful_timeout=0.0 if args.force else None)
        _print_report(report, orchestrator, show_urls=False)
        return report.exit_code
    if command == "status":
        return await _status(args, orchestrator)
    raise ConfigurationError.invalid_value("command", command, "Unknown command")


async def _status(args: argparse.Namespace, orchestrator: StackOrchestrator) -> int:
    status = await orchestrator.status()
    handles = [handle for handle in status.handles if args.service in (None, handle.service)]
    details = await _service_details(orchestrator, handles) if (args.verbose or args.json) else {}

    if args.json:
        sys.stdout.write(json.dumps(_status_payload(status, handles, details), indent=2) + "\n")
    else:
        for handle in handles:
            _print_handle(handle, orchestrator.settings, details.get(handle.service, {}), verbose=args.verbose)
        if args.service is None:
            logger.info("Overall: %s", status.overall.value.replace("_", " "))

    if args.service is None:
        return EXIT_OK if status.overall == OverallState.ALL_HEALTHY else EXIT_FAILURE
    return EXIT_OK if all(handle.is_fully_healthy for handle in handles) else EXIT_FAILURE


async def _service_details(orchestrator: StackOrchestrator, handles: List[ServiceHandle]) -> Dict[str, Dict[str, Any]]:
    settings = orchestrator.settings
    checker = orchestrator.supervisor.health_checker
    details: Dict[str, Dict[str, Any]] = {}
    for handle in handles:
        if not handle.healthy:
            continue
        descriptor = settings.descriptor(handle.service)
        payload = await checker.fetch_json(descriptor.liveness_url)
        if not isinstance(payload, dict):
            continue
        if descriptor is settings.inference and isinstance(payload.get("models"), list):
            details[handle.service] = {"models": len(payload["models"])}
        elif descriptor is settings.webui and "version" in payload:
            details[handle.service] = {"version": str(payload["version"])}
    return details


def _status_payload(status: StackStatus, handles: List[ServiceHandle], details: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    services = {}
    for handle in handles:
        services[handle.service] = {
            "running": handle.running,
            "port_active": handle.port_active,
            "port_established": handle.port_established,
            "healthy": handle.healthy,
            "pid": handle.pid,
            "pids": [record.pid for record in handle.processes],
            "launched_pid": handle.launched_pid,
            "memory_bytes": handle.memory_bytes,
            "uptime_seconds": handle.uptime_seconds,
            "port_holders": [{"pid": holder.pid, "name": holder.name} for holder in handle.port_holders],
            **details.get(handle.service, {}),
        }
    return {"overall": status.overall.value, "services": services}


def _print_handle(handle: ServiceHandle, settings: StackSettings, details: Dict[str, Any], *, verbose: bool) -> None:
    descriptor = settings.descriptor(handle.service)
    state = "healthy" if handle.is_fully_healthy else "down" if not handle.running else "unhealthy"
    logger.info(
        "%s: %s (process %s, port %s %s, health %s)",
        descriptor.display_name,
        state,
        "running" if handle.running else "not running",
        descriptor.port,
        "listening" if handle.port_active else "closed",
        "ok" if handle.healthy else "failing",
    )
    for holder in handle.port_holders:
        logger.warning("  port %s held by unrelated process %s", descriptor.port, holder.label)
    if not verbose:
        return
    if handle.pid is not None:
        logger.info("  PID: %s%s", handle.pid, f" (+{len(handle.processes) - 1} more)" if len(handle.processes) > 1 else "")
    if handle.memory_bytes is not None:
        logger.info("  Memory: %.1f MB", handle.memory_bytes / (1024 * 1024))
    if handle.uptime_seconds is not None:
        logger.info("  Uptime: %s", format_duration(handle.uptime_seconds))
    logger.info("  URL: %s", descriptor.access_url)
    if "models" in details:
        logger.info("  Models installed: %d", details["models"])
    if "version" in details:
        logger.info("  Version: %s", details["version"])


def _print_report(report: StackReport, orchestrator: StackOrchestrator, *, show_urls: bool = True) -> None:
    if report.aborted:
        logger.error("Aborted: %s", report.aborted)
        return
    for result in report.results:
        if result.succeeded:
            logger.info("%s", result.describe())
        else:
            logger.error("%s", result.describe())
    for service, reason in report.skipped.items():
        logger.error("%s: skipped (%s)", service, reason)
    if report.status is not None:
        logger.info("Overall: %s", report.status.overall.value.replace("_", " "))
    if show_urls and report.succeeded:
        for label, url in orchestrator.access_urls().items():
            logger.info("%s: %s", label, url)


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def _confirm_callback(assume_yes: bool) -> Optional[Confirm]:
    if assume_yes:
        return lambda _prompt: True
    if not sys.stdin.isatty():
        return None
    return _ask


def _ask(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _install_termination_handler(cancel_event: asyncio.Event) -> bool:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, cancel_event.set)
    except (NotImplementedError, RuntimeError, ValueError):
        # No loop signal support on Windows
        logger.debug("SIGTERM handler not installed")
        return False
    return True
