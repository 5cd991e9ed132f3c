"""Tool registration for the branchspace MCP server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..app import Branchspace
from ..devcontainer import UpResult
from ..errors import BranchspaceError, CancelledError, NotFoundError, ValidationError
from ..git import is_worktree, main_repo_from_worktree
from ..process import with_timeout
from ..storage import SessionBinding
from ..workspaces import Ambiguous, Resolved, WorkspaceMatch, resolve_workspace

logger = logging.getLogger(__name__)

TargetKind = Literal["clone", "worktree"]


@dataclass(slots=True)
class ToolHandles:
    workspace_target: Any
    workspace_set_context: Any
    workspace_exec: Any
    workspace_route: Any
    workspace_list: Any
    workspace_stale: Any


def _session_id(explicit: str | None, context: Context | None) -> str:
    session_id = explicit or getattr(context, "session_id", None)
    if not session_id:
        raise ValidationError("A session_id is required to bind a workspace")
    return str(session_id)


def _match_payload(match: WorkspaceMatch) -> dict[str, Any]:
    return {
        "repo": match.repo,
        "branch": match.branch,
        "workspace": str(match.workspace),
        "kind": match.kind,
    }


def _binding_payload(binding: SessionBinding) -> dict[str, Any]:
    return {
        "workspace": binding.workspace,
        "repo": binding.repo_name,
        "branch": binding.branch,
        "kind": binding.kind,
        "starting": binding.starting,
        "source_url": binding.source_url,
        "source_type": binding.source_type,
    }


def register_tools(server: FastMCP, *, app: Branchspace) -> ToolHandles:
    """Register the workspace tools on ``server``."""

    settings = app.settings
    sessions = app.sessions
    router = app.router
    devcontainers = app.devcontainers

    def _bind(
        session_id: str,
        workspace: Path,
        *,
        repo: str,
        branch: str,
        kind: TargetKind,
        starting: bool = False,
        main_repo: Path | None = None,
        source_url: str | None = None,
        source_type: str | None = None,
    ) -> SessionBinding:
        return sessions.save(
            SessionBinding(
                session_id=session_id,
                workspace=str(workspace),
                repo_name=repo,
                branch=branch,
                kind=kind,
                starting=starting,
                main_repo=str(main_repo) if main_repo else None,
                source_url=source_url,
                source_type=source_type,
            )
        )

    async def _current_repo(cwd: str | None) -> Path | None:
        if not cwd:
            return None
        root = await app.git.repo_root(cwd)
        return Path(root) if root else None

    async def _start_container(
        session_id: str,
        workspace: Path,
        *,
        repo: str,
        branch: str,
        context: Context | None,
    ) -> dict[str, Any]:
        """Bind immediately and start the container, waiting up to the interactive budget."""

        if await devcontainers.is_container_running(workspace):
            binding = _bind(session_id, workspace, repo=repo, branch=branch, kind="clone")
            return {"status": "active", "message": f"Switched to {repo}/{branch}", **_binding_payload(binding)}

        _bind(session_id, workspace, repo=repo, branch=branch, kind="clone", starting=True)

        def _on_done(result: UpResult | None, error: BaseException | None) -> None:
            if result is None:
                return
            current = sessions.load(session_id)
            if current is not None and current.workspace == str(workspace):
                sessions.update(session_id, starting=False)

        task = devcontainers.up_background(workspace, repo=repo, branch=branch, on_done=_on_done)
        try:
            result = await with_timeout(task, settings.interactive_budget_seconds)
        except TimeoutError:
            _emit_log(
                context,
                "info",
                "Container still starting",
                extra={"session_id": session_id, "workspace": str(workspace)},
            )
            binding = sessions.load(session_id)
            return {
                "status": "starting",
                "message": f"Container for {repo}/{branch} is starting in the background.",
                **(_binding_payload(binding) if binding else {}),
            }
        except BranchspaceError as exc:
            return {
                "status": "failed",
                "error": str(exc),
                "hint": f"Run 'branchspace up {workspace}' to see the full output.",
                "workspace": str(workspace),
                "repo": repo,
                "branch": branch,
            }

        binding = sessions.load(session_id)
        payload = {"status": "active", "message": f"Switched to {repo}/{branch}", "port": result.port}
        if binding is not None:
            payload.update(_binding_payload(binding))
        return payload

    async def _workspace_target(
        target: str | None = None,
        *,
        kind: TargetKind = "clone",
        create: bool = False,
        cwd: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Show, clear, or switch the workspace bound to this session."""

        sid = _session_id(session_id, context)
        target = (target or "").strip()

        if not target:
            binding = sessions.load(sid)
            if binding is None:
                return {"status": "inactive", "message": "No workspace bound; commands run on the host."}
            status = "starting" if binding.starting else "active"
            return {"status": status, **_binding_payload(binding)}

        if target.lower() == "off":
            removed = sessions.delete(sid)
            _emit_log(context, "info", "Cleared workspace binding", extra={"session_id": sid})
            return {"status": "off", "cleared": removed}

        root = settings.worktrees_dir if kind == "worktree" else settings.clones_dir
        repo_root = await _current_repo(cwd)
        resolution = resolve_workspace(
            target,
            root,
            kind=kind,
            current_repo=repo_root.name if repo_root else None,
        )

        if isinstance(resolution, Ambiguous):
            return {
                "status": "ambiguous",
                "message": f"Multiple workspaces match '{target}'; use repo/branch.",
                "matches": [_match_payload(match) for match in resolution.matches],
            }

        if isinstance(resolution, Resolved):
            match = resolution.match
            if kind == "worktree":
                binding = _bind(
                    sid,
                    match.workspace,
                    repo=match.repo,
                    branch=match.branch,
                    kind="worktree",
                    main_repo=match.main_repo,
                )
                _emit_log(context, "info", "Bound worktree", extra={"session_id": sid, "workspace": binding.workspace})
                return {"status": "active", **_binding_payload(binding)}
            return await _start_container(sid, match.workspace, repo=match.repo, branch=match.branch, context=context)

        if repo_root is None:
            return {
                "status": "not_found",
                "message": f"No workspace for '{target}' and no repository at cwd to create one from.",
            }

        if kind == "worktree":
            if not create:
                return {
                    "status": "not_found",
                    "message": f"No worktree for '{target}'. Call again with create=true to create it.",
                }
            created = await app.provisioner.create_worktree(repo_root, target)
            binding = _bind(
                sid,
                created.workspace,
                repo=created.repo,
                branch=created.branch,
                kind="worktree",
                main_repo=created.main_repo,
            )
            return {"status": "active", "created": created.created, **_binding_payload(binding)}

        clone = await app.provisioner.create_clone(repo_root, target)
        _emit_log(context, "info", "Created clone", extra={"session_id": sid, "workspace": str(clone.workspace)})
        return await _start_container(sid, clone.workspace, repo=clone.repo, branch=clone.branch, context=context)

    def _workspace_set_context(
        workspace: str,
        branch: str | None = None,
        source_url: str | None = None,
        source_type: str | None = None,
        *,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Bind this session to an existing workspace path without starting anything.

        ``source_url`` and ``source_type`` record where the work came from
        (a pull request or issue) and are kept on the binding.
        """

        sid = _session_id(session_id, context)
        path = Path(workspace.rstrip("/")).expanduser()
        if not path.is_dir():
            raise NotFoundError(f"Workspace does not exist: {path}")
        worktree = is_worktree(path)
        main_repo = main_repo_from_worktree(path) if worktree else None
        binding = _bind(
            sid,
            path,
            repo=path.parent.name or "unknown",
            branch=branch or path.name,
            kind="worktree" if worktree else "clone",
            main_repo=Path(main_repo) if main_repo else None,
            source_url=source_url,
            source_type=source_type,
        )
        _emit_log(context, "info", "Set workspace context", extra={"session_id": sid, "workspace": binding.workspace})
        return {"status": "active", **_binding_payload(binding)}

    async def _workspace_exec(
        command: str,
        *,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run a command inside the session's workspace and return its output."""

        sid = _session_id(session_id, context)
        router.auto_initialize(sid)
        cancel = getattr(context, "cancel_event", None)
        try:
            result = await router.exec(sid, command, cancel=cancel if isinstance(cancel, asyncio.Event) else None)
        except CancelledError as exc:
            _emit_log(context, "info", "Command cancelled", extra={"session_id": sid})
            return {"status": "cancelled", "message": str(exc)}

        _emit_log(
            context,
            "debug",
            "Executed workspace command",
            extra={"session_id": sid, "returncode": result.returncode},
        )
        return {
            "status": "completed" if result.ok else "failed",
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }

    def _workspace_route(
        command: str,
        *,
        cwd: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Preview how a shell command would be rewritten for this session."""

        sid = _session_id(session_id, context)
        router.auto_initialize(sid)
        return router.route(sid, command, cwd=cwd).to_dict()

    def _workspace_list(
        kind: Literal["clone", "worktree", "orphan"] | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List known workspaces with their ports and bound sessions."""

        descriptors = app.inventory.list_all(kind=kind)
        _emit_log(context, "debug", "Listing workspaces", extra={"count": len(descriptors)})
        return [descriptor.to_dict() for descriptor in descriptors]

    async def _workspace_stale(
        max_age_days: float | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List workspaces untouched for longer than ``max_age_days``."""

        stale = await app.inventory.find_stale(max_age_days or settings.stale_days)
        return [descriptor.to_dict() for descriptor in stale]

    tool_target = server.tool(
        name="workspace_target",
        description=(
            "Switch this session to a branch workspace (clone with devcontainer, or worktree), "
            "show the current one with no target, or pass 'off' to return to the host."
        ),
    )(_workspace_target)

    tool_set_context = server.tool(
        name="workspace_set_context",
        description="Bind this session to an existing workspace directory.",
    )(_workspace_set_context)

    tool_exec = server.tool(
        name="workspace_exec",
        description="Run a shell command in the session's workspace and return stdout/stderr.",
    )(_workspace_exec)

    tool_route = server.tool(
        name="workspace_route",
        description="Show how a command would be routed: host, workspace, or HOST: escape.",
    )(_workspace_route)

    tool_list = server.tool(
        name="workspace_list",
        description="List clones, worktrees, and orphaned port or session entries.",
    )(_workspace_list)

    tool_stale = server.tool(
        name="workspace_stale",
        description="List workspaces not modified within the configured number of days.",
    )(_workspace_stale)

    return ToolHandles(
        workspace_target=tool_target,
        workspace_set_context=tool_set_context,
        workspace_exec=tool_exec,
        workspace_route=tool_route,
        workspace_list=tool_list,
        workspace_stale=tool_stale,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Prefer the MCP context logger when one is attached."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return

    getattr(logger, level, logger.info)(message, extra=payload)
