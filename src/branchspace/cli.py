"""branchspace command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, TextIO

from pydantic import ValidationError as SettingsValidationError

from .app import Branchspace, build_branchspace
from .config import BranchspaceSettings, get_settings
from .errors import (
    EXIT_SUCCESS,
    AmbiguousTargetError,
    BranchspaceError,
    NotFoundError,
    ValidationError,
)
from .routing import shell_quote
from .server import configure_logging
from .workspaces import Ambiguous, NotFound, WorkspaceDescriptor, format_workspace, resolve_workspace

logger = logging.getLogger(__name__)


def load_settings() -> BranchspaceSettings:
    try:
        return get_settings()
    except SettingsValidationError as exc:
        raise ValidationError(f"Invalid configuration: {exc}") from exc


def load_app(args: argparse.Namespace) -> Branchspace:
    return build_branchspace(load_settings())


def emit(args: argparse.Namespace, payload: Any, text: str | None = None) -> None:
    if getattr(args, "json", False):
        print(json.dumps(payload, indent=2, default=str))
    elif text:
        print(text)


async def _repo_root(app: Branchspace, cwd: Path | None = None) -> Path:
    root = await app.git.repo_root(cwd or Path.cwd())
    if root is None:
        raise ValidationError("Not in a git repository")
    return Path(root)


async def _resolve_clone(app: Branchspace, target: str, repo: str | None = None) -> Path:
    """Turn a branch, ``repo/branch``, or path into an existing clone directory."""

    if Path(target).is_absolute():
        path = Path(target)
        if not path.is_dir():
            raise NotFoundError(f"Workspace does not exist: {path}")
        return path

    if repo:
        target = f"{repo}/{target}"
    current = await app.git.repo_root(Path.cwd())
    resolution = resolve_workspace(
        target,
        app.settings.clones_dir,
        current_repo=Path(current).name if current else None,
    )
    if isinstance(resolution, Ambiguous):
        raise AmbiguousTargetError(target, resolution.matches)
    if isinstance(resolution, NotFound):
        raise NotFoundError(f"No workspace found for '{target}'")
    return resolution.match.workspace


async def _tracked_workspace(app: Branchspace, target: str | None, repo: str | None) -> Path:
    if target:
        return await _resolve_clone(app, target, repo)
    workspace = await _repo_root(app)
    if str(workspace) not in app.ports.read():
        raise NotFoundError(f"No devcontainer tracked for {workspace}. Run 'branchspace up' first.")
    return workspace


def cmd_up(args: argparse.Namespace) -> int:
    app = load_app(args)

    async def _run():
        target = args.target or str(await _repo_root(app))
        return await app.devcontainers.up(
            target,
            remove_existing=args.remove_existing,
            dry_run=args.dry_run,
        )

    result = asyncio.run(_run())
    if result.dry_run:
        text = "Would run: " + " ".join(shell_quote(part) for part in result.command)
    else:
        text = f"Started {result.repo}/{result.branch} on port {result.port}"
    emit(args, result.to_dict(), text)
    return EXIT_SUCCESS


def cmd_down(args: argparse.Namespace) -> int:
    app = load_app(args)

    async def _run() -> dict[str, Any]:
        if args.prune:
            pruned = await app.ports.prune(app.devcontainers.is_container_running)
            return {"pruned": [{"workspace": ws, "port": port} for ws, port in pruned]}
        if args.all:
            stopped = []
            for workspace in list(app.ports.read()):
                if await app.devcontainers.down(workspace):
                    stopped.append(workspace)
            return {"stopped": stopped}
        workspace = await _tracked_workspace(app, args.target, args.repo)
        released = await app.devcontainers.down(workspace)
        return {"stopped": [str(workspace)] if released else []}

    payload = asyncio.run(_run())
    if "pruned" in payload:
        lines = ["Pruning stale port assignments..."]
        lines += [f"  released {entry['port']} ({entry['workspace']})" for entry in payload["pruned"]]
    else:
        lines = ["Stopping all tracked workspaces..."] if args.all else []
        lines += [f"Stopped {workspace}" for workspace in payload["stopped"]]
        if not payload["stopped"]:
            lines.append("Nothing to stop")
    emit(args, payload, "\n".join(lines))
    return EXIT_SUCCESS


def cmd_list(args: argparse.Namespace) -> int:
    app = load_app(args)
    pruned = app.sessions.prune() if args.prune_sessions else None
    descriptors = app.inventory.list_all(kind=args.kind)
    entries = [descriptor.to_dict() for descriptor in descriptors]
    lines = [_describe(descriptor) for descriptor in descriptors] or ["No workspaces found"]
    if pruned is None:
        emit(args, entries, "\n".join(lines))
        return EXIT_SUCCESS
    if pruned:
        lines.insert(0, f"Pruned {len(pruned)} session binding(s): {', '.join(pruned)}")
    emit(args, {"workspaces": entries, "pruned_sessions": pruned}, "\n".join(lines))
    return EXIT_SUCCESS


def _describe(descriptor: WorkspaceDescriptor) -> str:
    line = format_workspace(descriptor)
    if descriptor.sessions:
        line += f" sessions={len(descriptor.sessions)}"
    return f"{line}\n    {descriptor.workspace}"


def _split_exec_args(raw: list[str]) -> tuple[str | None, list[str]]:
    if "--" in raw:
        index = raw.index("--")
        before, command = raw[:index], raw[index + 1 :]
        if len(before) > 1:
            raise ValidationError("Only one workspace target may precede '--'")
        return (before[0] if before else None), command
    return None, raw


def cmd_exec(args: argparse.Namespace) -> int:
    target, command = _split_exec_args(args.command)
    if not command:
        raise ValidationError("No command specified")
    app = load_app(args)

    async def _run():
        if args.workspace:
            workspace = Path(args.workspace)
        else:
            workspace = await _tracked_workspace(app, target, args.repo)
        return await app.devcontainers.exec(workspace, command)

    result = asyncio.run(_run())
    if args.json:
        emit(
            args,
            {"returncode": result.returncode, "stdout": result.stdout, "stderr": result.stderr},
        )
    else:
        sys.stdout.write(result.stdout)
        sys.stderr.write(result.stderr)
    return result.returncode


def cmd_go(args: argparse.Namespace) -> int:
    app = load_app(args)

    if not args.branch:
        repo = args.repo or asyncio.run(_repo_root(app)).name
        clones = [descriptor for descriptor in app.inventory.list_clones() if descriptor.repo == repo]
        if not clones:
            emit(args, [], f"No clones found for {repo}")
            return EXIT_SUCCESS
        lines = [f"Available clones for {repo}:"] + [f"  {clone.branch}" for clone in clones]
        emit(args, [clone.to_dict() for clone in clones], "\n".join(lines))
        return EXIT_SUCCESS

    try:
        workspace = asyncio.run(_resolve_clone(app, args.branch, args.repo))
    except NotFoundError as exc:
        raise NotFoundError(f"Clone not found: {args.branch}") from exc
    emit(args, {"workspace": str(workspace)}, f"cd {shell_quote(str(workspace))}")
    return EXIT_SUCCESS


def cmd_clean(args: argparse.Namespace) -> int:
    app = load_app(args)
    days = args.days if args.days is not None else app.settings.stale_days

    async def _run() -> dict[str, list[dict[str, Any]]]:
        removed: list[dict[str, Any]] = []
        kept: list[dict[str, Any]] = []
        candidates: list[dict[str, Any]] = []
        for descriptor in await app.inventory.find_stale(days):
            entry = descriptor.to_dict()
            if not args.yes:
                candidates.append(entry)
                continue
            if descriptor.has_uncommitted and not args.force:
                kept.append(entry)
                continue
            await app.devcontainers.down(descriptor.workspace)
            if descriptor.kind == "worktree" and descriptor.main_repo is not None:
                await app.provisioner.remove_worktree(
                    descriptor.workspace, descriptor.main_repo, force=args.force
                )
            else:
                await app.provisioner.remove_clone(descriptor.repo, descriptor.branch)
            for binding in app.sessions.for_workspace(descriptor.workspace):
                app.sessions.delete(binding.session_id)
            removed.append(entry)
        return {"candidates": candidates, "removed": removed, "kept": kept}

    payload = asyncio.run(_run())
    lines: list[str] = []
    for entry in payload["candidates"]:
        warning = " (has uncommitted changes)" if entry["has_uncommitted"] else ""
        lines.append(f"Would remove {entry['repo']}/{entry['branch']}{warning}")
    for entry in payload["removed"]:
        lines.append(f"Removed {entry['repo']}/{entry['branch']}")
    for entry in payload["kept"]:
        lines.append(
            f"Kept {entry['repo']}/{entry['branch']}: "
            f"{entry['uncommitted_count']} uncommitted change(s); use --force to remove"
        )
    if not lines:
        lines.append(f"No stale workspaces older than {days:g} days")
    elif payload["candidates"]:
        lines.append("Re-run with --yes to remove.")
    emit(args, payload, "\n".join(lines))
    return EXIT_SUCCESS


def cmd_ports(args: argparse.Namespace) -> int:
    app = load_app(args)
    if args.action == "prune":
        pruned = asyncio.run(app.ports.prune(app.devcontainers.is_container_running))
        payload = [{"workspace": ws, "port": port} for ws, port in pruned]
        lines = [f"Released {entry['port']} ({entry['workspace']})" for entry in payload]
        emit(args, payload, "\n".join(lines) or "No stale port assignments")
        return EXIT_SUCCESS

    table = app.ports.read()
    lines = [f"{port}  {workspace}" for workspace, port in sorted(table.items(), key=lambda item: item[1])]
    emit(args, table, "\n".join(lines) or "No ports allocated")
    return EXIT_SUCCESS


def cmd_jobs(args: argparse.Namespace) -> int:
    app = load_app(args)
    if args.cleanup:
        removed = app.jobs.cleanup(
            app.settings.job_retention_seconds, app.settings.failed_job_retention_seconds
        )
        emit(args, {"removed": removed}, f"Removed {removed} finished job(s)")
        return EXIT_SUCCESS

    jobs = app.jobs.list()
    lines = []
    for job in jobs:
        line = f"[{job.status.value}] {job.workspace}"
        if job.error:
            line += f": {job.error}"
        lines.append(line)
    emit(args, [job.model_dump(mode="json") for job in jobs], "\n".join(lines) or "No jobs")
    return EXIT_SUCCESS


def hook_response(app: Branchspace, event: dict[str, Any]) -> dict[str, Any] | None:
    """Rewrite a pre-tool-use shell event; ``None`` leaves the command untouched."""

    if event.get("tool_name") != "Bash":
        return None
    session_id = event.get("session_id")
    tool_input = event.get("tool_input") or {}
    command = tool_input.get("command")
    if not session_id or not isinstance(command, str):
        return None

    app.router.auto_initialize(session_id)
    cwd = event.get("cwd")
    routed = app.router.route(session_id, command, cwd=cwd)
    rewritten = routed.command
    if routed.workdir and routed.workdir != cwd:
        rewritten = f"cd {shell_quote(routed.workdir)} && {rewritten}"
    if rewritten == command:
        return None
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "allow",
            "updatedInput": {**tool_input, "command": rewritten},
        }
    }


def cmd_hook(args: argparse.Namespace, stdin: TextIO | None = None) -> int:
    try:
        event = json.load(stdin or sys.stdin)
    except json.JSONDecodeError:
        return EXIT_SUCCESS
    if not isinstance(event, dict):
        return EXIT_SUCCESS

    try:
        app = load_app(args)
        response = hook_response(app, event)
    except BranchspaceError as exc:
        logger.warning("Leaving command unrouted", extra={"error": str(exc)})
        return EXIT_SUCCESS
    if response is not None:
        print(json.dumps(response))
    return EXIT_SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="branchspace", description="Per-branch workspaces for coding agents"
    )
    sub = parser.add_subparsers(dest="command_name")

    def add(name: str, help_text: str, func) -> argparse.ArgumentParser:
        command = sub.add_parser(name, help=help_text, description=help_text)
        command.add_argument("--json", action="store_true", help="Output JSON")
        command.set_defaults(func=func)
        return command

    p_up = add("up", "Clone (if needed) and start a devcontainer for a branch", cmd_up)
    p_up.add_argument("target", nargs="?", help="Branch name or workspace path (default: current repo)")
    p_up.add_argument("--remove-existing", action="store_true", help="Recreate the container")
    p_up.add_argument("--dry-run", action="store_true", help="Print the devcontainer command only")

    p_down = add("down", "Release a workspace's port and override config", cmd_down)
    p_down.add_argument("target", nargs="?", help="Branch name or workspace path (default: current repo)")
    p_down.add_argument("--repo", help="Repository name when the branch exists in several")
    p_down.add_argument("--all", action="store_true", help="Stop every tracked workspace")
    p_down.add_argument("--prune", action="store_true", help="Release ports whose container is gone")

    p_list = add("list", "List workspaces with ports and bound sessions", cmd_list)
    p_list.add_argument("--kind", choices=["clone", "worktree", "orphan"])
    p_list.add_argument(
        "--prune-sessions", action="store_true", help="Drop session bindings whose workspace is gone"
    )

    p_exec = add("exec", "Run a command inside a workspace's devcontainer", cmd_exec)
    p_exec.add_argument("--workspace", help="Workspace path to run in")
    p_exec.add_argument("--repo", help="Repository name when the branch exists in several")
    p_exec.add_argument("command", nargs=argparse.REMAINDER, help="[target] -- command ...")

    p_go = add("go", "Print the directory of a branch clone", cmd_go)
    p_go.add_argument("branch", nargs="?")
    p_go.add_argument("--repo", help="Repository name")

    p_clean = add("clean", "Remove workspaces untouched for a number of days", cmd_clean)
    p_clean.add_argument("--days", type=float, default=None, help="Age threshold in days")
    p_clean.add_argument("--yes", action="store_true", help="Actually remove the workspaces")
    p_clean.add_argument("--force", action="store_true", help="Also remove workspaces with uncommitted changes")

    p_ports = add("ports", "Show or prune port assignments", cmd_ports)
    p_ports.add_argument("action", nargs="?", choices=["list", "prune"], default="list")

    p_jobs = add("jobs", "Show background container-start jobs", cmd_jobs)
    p_jobs.add_argument("--cleanup", action="store_true", help="Delete finished jobs past retention")

    add("hook", "Rewrite a pre-tool-use shell event read from stdin", cmd_hook)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        level = load_settings().log_level
    except ValidationError:
        # Commands that load the app report the configuration error themselves.
        level = "WARNING"
    configure_logging(level)
    try:
        code = args.func(args)
    except BranchspaceError as exc:
        if args.json:
            print(json.dumps(exc.to_dict()))
        else:
            print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(exc.exit_code)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
