"""FastMCP server bootstrap for branchspace."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .app import Branchspace, build_branchspace
from .config import BranchspaceSettings, get_settings
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the branchspace processes."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[BranchspaceSettings] = None,
    app: Branchspace | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the workspace tools and status resource."""

    settings = settings or get_settings()
    app = app or build_branchspace(settings)

    server = FastMCP(
        name="branchspace",
        version=__version__,
        instructions=(
            "branchspace gives each agent session its own branch workspace. Use "
            "workspace_target to switch branches; shell commands then run inside "
            "that workspace. Prefix a command with HOST: to run it on the host."
        ),
    )

    handles = register_tools(server, app=app)

    @server.resource(
        "resource://branchspace/status",
        name="branchspace_status",
        title="branchspace Status",
        description="Ports, sessions, and background jobs known to branchspace.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing workspace state."""

        jobs = app.jobs.list()
        job_counts: dict[str, int] = {}
        for job in jobs:
            job_counts[job.status.value] = job_counts.get(job.status.value, 0) + 1

        ports = app.ports.read()
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "tools": {
                **app.tools,
                "devcontainer_available": app.devcontainers.available,
            },
            "ports": {
                "range": [settings.port_range_start, settings.port_range_end],
                "allocated": len(ports),
                "entries": ports,
            },
            "sessions": {
                "count": len(app.sessions.list()),
            },
            "jobs": {
                "count": len(jobs),
                "status_counts": job_counts,
                "recent": [job.model_dump(mode="json") for job in jobs[-5:]],
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "branchspace", app)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the branchspace MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    app = getattr(server, "branchspace")
    logging.getLogger(__name__).info(
        "Launching branchspace MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "devcontainer_available": app.devcontainers.available,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
