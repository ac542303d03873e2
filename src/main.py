# src/main.py — v1
"""CLI entry point — plan and deploy commands.

Usage:
    sorodeploy plan <root> [--export PATH] [--export-format graphml|json]
    sorodeploy deploy <root> [--mode sequential|parallel] [--concurrency N]
                             [--network NAME] [--source ID] [--cli-path PATH]
                             [--rpc-endpoints URLS] [--no-retry]

Exit codes: 0 success, 1 failures or bad input, 2 dependency cycle,
130 cancelled or interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sorodeploy.batch.executor import BatchExecutor, DeployOne
from sorodeploy.batch.models import BatchRunReport, ProgressEvent
from sorodeploy.batch.planner import build_batch_items
from sorodeploy.config.settings import ConfigurationError, Settings, load_settings
from sorodeploy.core.errors import StructuralError
from sorodeploy.core.models import ItemStatus, ManifestNode
from sorodeploy.deploy.cli_deployer import CliDeployer
from sorodeploy.deploy.resilient import ResilientDeployer
from sorodeploy.logging.logger import setup_logging
from sorodeploy.manifest.scanner import ManifestScanner
from sorodeploy.resilience.circuit_breaker import CircuitBreakerService
from sorodeploy.resilience.rate_limiter import RateLimiter
from sorodeploy.resolver.dag_builder import resolve_dependencies
from sorodeploy.resolver.exporter import export_graph
from sorodeploy.resolver.models import ResolutionResult
from sorodeploy.rpc.endpoints import EndpointSelectionError, select_endpoint
from sorodeploy.version import __version__

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CYCLE = 2
EXIT_CANCELLED = 130


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_FAILED

    try:
        settings = load_settings(**_settings_overrides(args))
    except (ConfigurationError, ValidationError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_FAILED

    _setup_logging(settings, args.verbose)

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_CANCELLED
    except StructuralError as exc:
        logger.error("%s", exc)
        return EXIT_FAILED
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return EXIT_FAILED


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sorodeploy",
        description=f"sorodeploy v{__version__} — dependency-ordered contract deployment",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- plan ---
    p_plan = subparsers.add_parser(
        "plan", help="Resolve deployment order without deploying",
    )
    p_plan.add_argument("root", type=Path, help="Directory containing contracts")
    p_plan.add_argument(
        "--no-recursive", action="store_true",
        help="Only scan the root and its direct children",
    )
    p_plan.add_argument(
        "--export", type=Path, default=None,
        help="Write the dependency graph to this file",
    )
    p_plan.add_argument(
        "--export-format", choices=("graphml", "json"), default="graphml",
        help="Graph export format (default: graphml)",
    )
    p_plan.set_defaults(func=_cmd_plan)

    # --- deploy ---
    p_deploy = subparsers.add_parser(
        "deploy", help="Build and deploy every contract in dependency order",
    )
    p_deploy.add_argument("root", type=Path, help="Directory containing contracts")
    p_deploy.add_argument(
        "--no-recursive", action="store_true",
        help="Only scan the root and its direct children",
    )
    p_deploy.add_argument(
        "--mode", choices=("sequential", "parallel"), default=None,
        help="Execution mode (default: from settings)",
    )
    p_deploy.add_argument(
        "--concurrency", type=int, default=None,
        help="Max parallel deployments, 1-10 (default: from settings)",
    )
    p_deploy.add_argument("--network", default=None, help="Target network")
    p_deploy.add_argument("--source", default=None, help="Signing identity")
    p_deploy.add_argument("--cli-path", default=None, help="Path to the stellar CLI")
    p_deploy.add_argument(
        "--rpc-endpoints", default=None,
        help="Comma-separated RPC endpoints (url or url|priority) to deploy through",
    )
    p_deploy.add_argument(
        "--no-retry", action="store_true",
        help="Disable retries and the circuit breaker",
    )
    p_deploy.set_defaults(func=_cmd_deploy)

    return parser


def _settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Map CLI flags onto Settings fields; unset flags keep env/.env values."""
    mapping = {
        "mode": "batch_mode",
        "concurrency": "batch_concurrency",
        "network": "network",
        "source": "source",
        "cli_path": "cli_path",
        "rpc_endpoints": "rpc_endpoints",
    }
    overrides: dict[str, Any] = {}
    for flag, field_name in mapping.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field_name] = value
    if getattr(args, "no_retry", False):
        overrides["retry_enabled"] = False
    return overrides


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


async def _cmd_plan(args: argparse.Namespace, settings: Settings) -> int:
    """Print the resolved deployment order (or the cycles preventing one)."""
    scanned = _scan_and_resolve(args)
    if scanned is None:
        return EXIT_FAILED
    nodes, result = scanned

    if args.export is not None:
        written = export_graph(result, args.export, fmt=args.export_format)
        print(f"Graph written to {written}")

    if result.has_cycles:
        _print_cycles(result, nodes)
        return EXIT_CYCLE

    names = {n.id: n.name for n in nodes}
    print(f"\nDeployment plan ({len(result.order)} contracts, {len(result.waves)} waves):")
    for idx, wave in enumerate(result.waves, start=1):
        print(f"  Wave {idx}: {', '.join(names[n] for n in wave)}")
    return EXIT_OK


async def _cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    """Resolve, then deploy every contract with the configured executor."""
    scanned = _scan_and_resolve(args)
    if scanned is None:
        return EXIT_FAILED
    nodes, result = scanned
    if result.has_cycles:
        _print_cycles(result, nodes)
        return EXIT_CYCLE

    items = build_batch_items(result, nodes)
    breaker_service = CircuitBreakerService(settings.retry_policy(), settings.breaker_policy())

    rpc_url = passphrase = None
    endpoints = settings.rpc_endpoint_list
    if endpoints:
        try:
            selected = await select_endpoint(
                endpoints,
                breaker_service,
                RateLimiter(settings.rate_limit_policy()),
                timeout_s=settings.rpc_timeout_s,
            )
        except EndpointSelectionError as exc:
            logger.error("%s", exc)
            return EXIT_FAILED
        rpc_url, passphrase = selected.url, selected.passphrase

    cli = CliDeployer.from_settings(settings, rpc_url=rpc_url, network_passphrase=passphrase)
    deploy_one: DeployOne = cli
    if settings.retry_enabled:
        deploy_one = ResilientDeployer(
            cli, breaker_service, network=settings.network, prepare=cli.prepare,
        )

    executor = BatchExecutor()
    _install_sigterm(executor)
    report = await executor.run(
        items,
        mode=settings.batch_mode,
        concurrency=settings.batch_concurrency,
        deploy_one=deploy_one,
        waves=result.waves if settings.batch_mode == "parallel" else None,
        on_progress=_print_progress,
    )
    _print_report(report)

    if report.cancelled:
        return EXIT_CANCELLED
    return EXIT_FAILED if report.has_failures else EXIT_OK


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _scan_and_resolve(
    args: argparse.Namespace,
) -> tuple[list[ManifestNode], ResolutionResult] | None:
    root: Path = args.root
    if not root.is_dir():
        logger.error("Not a directory: %s", root)
        return None
    nodes = ManifestScanner().scan(root, recursive=not args.no_recursive)
    if not nodes:
        logger.error("No contracts found under %s", root)
        return None
    return nodes, resolve_dependencies(nodes)


def _install_sigterm(executor: BatchExecutor) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, executor.cancel_active_batch)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler not supported on this platform")


def _print_cycles(result: ResolutionResult, nodes: list[ManifestNode]) -> None:
    names = {n.id: n.name for n in nodes}
    print("\nCircular dependencies detected:", file=sys.stderr)
    for cycle in result.cycles:
        print(f"  {' -> '.join(names.get(n, n) for n in cycle)}", file=sys.stderr)


def _print_progress(event: ProgressEvent) -> None:
    if event.item_id is None or event.status is None or not event.status.is_terminal:
        return
    print(f"[{event.done}/{event.total} {event.percentage:5.1f}%] {event.message}")


def _print_report(report: BatchRunReport) -> None:
    counts = report.counts
    print(f"\nBatch {report.batch_id} {'cancelled' if report.cancelled else 'complete'}:")
    print(f"  Succeeded:  {counts[ItemStatus.SUCCEEDED.value]}")
    print(f"  Failed:     {counts[ItemStatus.FAILED.value]}")
    print(f"  Skipped:    {counts[ItemStatus.SKIPPED.value]}")
    print(f"  Cancelled:  {counts[ItemStatus.CANCELLED.value]}")
    print(f"  Duration:   {report.duration_ms / 1000:.1f}s")
    for r in report.results.values():
        if r.status is ItemStatus.SUCCEEDED:
            print(f"  + {r.name}: {r.artifact_ref}")
        elif r.status is not ItemStatus.PENDING:
            print(f"  - {r.name}: {r.status.value} ({r.error})")


def _setup_logging(settings: Settings, verbose: bool) -> None:
    """Configure logging for CLI usage."""
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )


if __name__ == "__main__":
    sys.exit(main())
