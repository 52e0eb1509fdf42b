"""velosetup command-line entry point.

Deploys a Velociraptor server or manages the tool registry:

    velosetup deploy --mode standalone --port 8889
    velosetup tools list
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from velosetup import __version__
from velosetup.deploy.orchestrator import DeploymentOrchestrator
from velosetup.deploy.plan import (
    DEFAULT_FRONTEND_PORT,
    DEFAULT_GUI_PORT,
    BinarySource,
    DeploymentMode,
    DeploymentPlan,
)
from velosetup.deploy.state import DeploymentOutcome, ProgressEvent
from velosetup.errors import ConfigError
from velosetup.handlers import registry_op
from velosetup.settings import Settings
from velosetup.tools.registry import ToolRegistry


logger = logging.getLogger("velosetup")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(settings: Settings) -> None:
    """Log to stderr and to ``<log_dir>/deploy.log``."""
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        settings.log_dir / "deploy.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    logging.basicConfig(
        level=settings.log_level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr), file_handler],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="velosetup",
        description="Deploy a Velociraptor server and manage integrated tools.",
    )
    parser.add_argument("--version", action="version", version=f"velosetup {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Run the deployment")
    deploy.add_argument("--mode", choices=[m.value for m in DeploymentMode], default="standalone")
    deploy.add_argument("--source", choices=[s.value for s in BinarySource], default="download")
    deploy.add_argument("--binary-path", type=Path)
    deploy.add_argument("--bind-address")
    deploy.add_argument("--port", type=int, default=DEFAULT_GUI_PORT, help="GUI port")
    deploy.add_argument("--frontend-port", type=int, default=DEFAULT_FRONTEND_PORT)
    deploy.add_argument("--install-path", type=Path)
    deploy.add_argument("--datastore", type=Path)
    deploy.add_argument("--admin-user", default="admin")
    deploy.add_argument("--timeout", type=float, help="Overall deployment timeout in seconds")
    deploy.add_argument("--offline", action="store_true", help="No outbound network access")
    deploy.add_argument("--open-browser", action="store_true")
    deploy.add_argument(
        "--regenerate-credential",
        action="store_true",
        help="Replace the stored admin secret (invalidates the old one)",
    )
    deploy.add_argument(
        "--detach",
        action="store_true",
        help="Exit after deployment instead of supervising the server",
    )

    tools = sub.add_parser("tools", help="Manage the tool registry")
    tools.add_argument(
        "op",
        choices=[
            "register", "register_defaults", "install", "set_integration",
            "remove", "list", "get", "export", "import",
        ],
    )
    tools.add_argument("name", nargs="?")
    tools.add_argument("--category")
    tools.add_argument("--source-url")
    tools.add_argument("--description", default="")
    tools.add_argument("--enable", dest="enabled", action="store_true", default=None)
    tools.add_argument("--disable", dest="enabled", action="store_false")
    tools.add_argument("--file", type=Path, help="Document file for import/export")
    return parser


def plan_from_args(args: argparse.Namespace, settings: Settings) -> DeploymentPlan:
    return DeploymentPlan(
        mode=DeploymentMode(args.mode),
        binary_source=BinarySource(args.source),
        bind_address=args.bind_address,
        bind_port=args.port,
        frontend_port=args.frontend_port,
        install_path=args.install_path or settings.install_path,
        binary_path=args.binary_path,
        datastore_path=args.datastore,
        offline=args.offline,
        admin_username=args.admin_user,
        open_browser=args.open_browser,
    )


def print_event(event: ProgressEvent) -> None:
    suffix = f" [{event.error_kind}]" if event.error_kind else ""
    print(
        f"[{event.stage_index}/8] {event.stage_name:<13} {event.status.value:<10} "
        f"{event.message}{suffix}",
        flush=True,
    )


async def run_deploy(args: argparse.Namespace, settings: Settings) -> int:
    plan = plan_from_args(args, settings)
    registry = ToolRegistry(settings.data_dir, settings.tools_dir, settings.artifacts_dir)
    orchestrator = DeploymentOrchestrator(
        settings=settings,
        tool_source=registry.tool_config_entries,
        deployment_timeout=args.timeout,
        regenerate_credential=args.regenerate_credential,
    )

    try:
        result = await orchestrator.run(plan, on_progress=print_event)
    except ConfigError as e:
        logger.error(f"Invalid deployment plan: {e.message}")
        if e.hint:
            logger.info(f"Hint: {e.hint}")
        return 1

    if result.outcome != DeploymentOutcome.SUCCEEDED:
        failed = result.state.failed_stage
        if failed is not None:
            print(f"Deployment aborted at {failed.name}: {failed.message}", file=sys.stderr)
            for line in failed.log_lines:
                if line.startswith("Hint: "):
                    print(line, file=sys.stderr)
        return 1

    print(f"Velociraptor is running at {result.endpoint}")
    print(f"Admin user: {result.credential.username}")
    print(f"Admin password stored in {plan.install_path / 'secrets' / 'admin_credential.json'}")

    if args.detach or result.handle is None:
        return 0

    print("Supervising server; press Ctrl+C to stop.")
    try:
        status = await orchestrator.supervisor.wait_exit(result.handle)
    except asyncio.CancelledError:
        await orchestrator.supervisor.stop(result.handle)
        raise
    logger.error(f"Server exited ({status.value}, code {result.handle.exit_code})")
    return 1


async def run_tools(args: argparse.Namespace, settings: Settings) -> int:
    registry = ToolRegistry(settings.data_dir, settings.tools_dir, settings.artifacts_dir)
    op_args: Dict[str, Any] = {
        "name": args.name,
        "category": args.category,
        "source_url": args.source_url,
        "description": args.description,
        "enabled": args.enabled,
    }
    if args.op == "import":
        if args.file is None:
            print("import requires --file", file=sys.stderr)
            return 2
        op_args["document"] = args.file.read_text(encoding="utf-8")

    response = await registry_op(args.op, op_args, registry)

    if args.op == "export" and args.file is not None and response["type"] != "error":
        args.file.write_text(json.dumps(response["document"], indent=2), encoding="utf-8")
        print(f"Exported registry to {args.file}")
    else:
        print(json.dumps(response, indent=2))
    return 1 if response["type"] == "error" else 0


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings)

    runner = run_deploy if args.command == "deploy" else run_tools
    try:
        sys.exit(asyncio.run(runner(args, settings)))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
