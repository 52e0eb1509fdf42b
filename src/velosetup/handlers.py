"""Invocation surface for the CLI/GUI layer.

``run_deployment`` streams deployment progress; ``registry_op`` dispatches a
tool registry command and returns a standardized response dict.
"""

import logging
from collections.abc import AsyncIterator, Callable, Coroutine
from typing import Any, Optional

from velosetup.deploy.orchestrator import DeploymentOrchestrator
from velosetup.deploy.plan import DeploymentPlan
from velosetup.deploy.state import ProgressEvent
from velosetup.errors import DeploymentError
from velosetup.settings import Settings
from velosetup.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Type alias for registry command handlers
RegistryHandler = Callable[[dict[str, Any], ToolRegistry], Coroutine[Any, Any, dict[str, Any]]]


def make_error_response(
    request_id: str,
    code: str,
    message: str,
    details: Any | None = None,
    hint: str | None = None,
) -> dict[str, Any]:
    """Create a standardized error response."""
    error: dict[str, Any] = {"code": code, "message": message}
    if hint:
        error["hint"] = hint
    if details is not None:
        error["details"] = details
    return {
        "type": "error",
        "request_id": request_id,
        "error": error,
    }


def make_result_response(
    request_type: str,
    request_id: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """Create a standardized result response."""
    return {
        "type": f"{request_type}_result",
        "request_id": request_id,
        **kwargs,
    }


async def run_deployment(
    plan: DeploymentPlan,
    settings: Optional[Settings] = None,
    registry: Optional[ToolRegistry] = None,
    orchestrator: Optional[DeploymentOrchestrator] = None,
    deployment_timeout: Optional[float] = None,
) -> AsyncIterator[ProgressEvent]:
    """Run a deployment, yielding progress events.

    The terminal outcome is on ``orchestrator.state.outcome`` once the stream
    ends. Pass an orchestrator to keep a reference to it.
    """
    if orchestrator is None:
        orchestrator = DeploymentOrchestrator(
            settings=settings,
            tool_source=registry.tool_config_entries if registry else None,
            deployment_timeout=deployment_timeout,
        )
    async for event in orchestrator.events(plan):
        yield event


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not value or not isinstance(value, str):
        raise ValueError(f"Missing or invalid '{key}' parameter")
    return value


async def handle_register(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Register a tool under a category."""
    entry = registry.register(
        _require_str(args, "name"),
        _require_str(args, "category"),
        source_url=args.get("source_url"),
        description=args.get("description", ""),
    )
    return make_result_response("register", args.get("request_id", ""), tool=entry.to_dict())


async def handle_register_defaults(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Register the built-in catalog tools."""
    added = registry.register_defaults()
    return make_result_response(
        "register_defaults",
        args.get("request_id", ""),
        added=[t.name for t in added],
    )


async def handle_install(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Install a registered tool."""
    entry = await registry.install(_require_str(args, "name"))
    return make_result_response("install", args.get("request_id", ""), tool=entry.to_dict())


async def handle_set_integration(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Enable or disable server integration for a tool."""
    enabled = args.get("enabled")
    if not isinstance(enabled, bool):
        raise ValueError("Missing or invalid 'enabled' parameter")
    entry = registry.set_integration(_require_str(args, "name"), enabled)
    return make_result_response("set_integration", args.get("request_id", ""), tool=entry.to_dict())


async def handle_remove(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Remove a tool from the registry."""
    name = _require_str(args, "name")
    if not registry.remove(name):
        return make_error_response(
            args.get("request_id", ""),
            "not_found",
            f"Tool not registered: {name}",
        )
    return make_result_response("remove", args.get("request_id", ""), removed=True)


async def handle_list(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """List registered tools, optionally filtered by category."""
    tools = registry.list_tools(args.get("category"))
    return make_result_response("list", args.get("request_id", ""), tools=[t.to_dict() for t in tools])


async def handle_get(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Get one tool by name."""
    name = _require_str(args, "name")
    entry = registry.get(name)
    if entry is None:
        return make_error_response(args.get("request_id", ""), "not_found", f"Tool not registered: {name}")
    return make_result_response("get", args.get("request_id", ""), tool=entry.to_dict())


async def handle_export(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Export the registry document."""
    document = registry.export_config()
    return make_result_response("export", args.get("request_id", ""), document=document.to_dict())


async def handle_import(args: dict[str, Any], registry: ToolRegistry) -> dict[str, Any]:
    """Merge a registry document into the registry."""
    document = args.get("document")
    if document is None:
        raise ValueError("Missing 'document' parameter")
    touched = registry.import_config(document)
    return make_result_response("import", args.get("request_id", ""), imported=touched)


# Handler registry
HANDLERS: dict[str, RegistryHandler] = {
    "register": handle_register,
    "register_defaults": handle_register_defaults,
    "install": handle_install,
    "set_integration": handle_set_integration,
    "remove": handle_remove,
    "list": handle_list,
    "get": handle_get,
    "export": handle_export,
    "import": handle_import,
}


async def registry_op(
    command: str,
    args: Optional[dict[str, Any]],
    registry: ToolRegistry,
) -> dict[str, Any]:
    """Dispatch a registry command to the appropriate handler.

    Classified failures come back as error responses whose ``code`` is the
    machine error kind.
    """
    args = dict(args or {})
    request_id = args.get("request_id", "")

    handler = HANDLERS.get(command)
    if not handler:
        return make_error_response(
            request_id,
            "unknown_command",
            f"Unknown registry command: {command}",
            details={"received_command": command},
        )

    try:
        return await handler(args, registry)
    except DeploymentError as e:
        logger.warning(f"Registry command {command} failed ({e.kind}): {e.message}")
        return make_error_response(request_id, e.kind, e.message, hint=e.hint)
    except ValueError as e:
        return make_error_response(request_id, "invalid_params", str(e))
