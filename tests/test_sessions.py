from __future__ import annotations

from pathlib import Path

import pytest

from branchspace.errors import ValidationError
from branchspace.storage import SessionBinding, SessionStore


def binding(session_id: str = "sess-1", workspace: str = "/ws/app/feature", **kwargs) -> SessionBinding:
    return SessionBinding(
        session_id=session_id,
        workspace=workspace,
        repo_name="app",
        branch="feature",
        **kwargs,
    )


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    saved = store.save(binding())

    reloaded = SessionStore(tmp_path).load("sess-1")

    assert reloaded is not None
    assert reloaded.workspace == "/ws/app/feature"
    assert reloaded.kind == "clone"
    assert reloaded.activated_at == saved.activated_at


def test_last_write_wins(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(binding())
    store.save(binding(workspace="/ws/app/other"))

    assert SessionStore(tmp_path).load("sess-1").workspace == "/ws/app/other"


def test_update_and_delete(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(binding(starting=True))

    updated = store.update("sess-1", starting=False)

    assert updated is not None and updated.starting is False
    assert store.update("missing", starting=False) is None
    assert store.delete("sess-1") is True
    assert store.delete("sess-1") is False
    assert store.load("sess-1") is None


def test_rejects_path_like_session_ids(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)

    with pytest.raises(ValidationError):
        store.load("../escape")


def test_for_workspace_and_prune(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions")
    feature = tmp_path / "ws" / "feature"
    main = tmp_path / "ws" / "main"
    feature.mkdir(parents=True)
    main.mkdir(parents=True)
    store.save(binding("a", workspace=str(feature)))
    store.save(binding("b", workspace=str(feature)))
    store.save(binding("c", workspace=str(main)))

    assert {item.session_id for item in store.for_workspace(feature)} == {"a", "b"}

    removed = store.prune(["a", "c"])

    assert removed == ["b"]
    assert [item.session_id for item in store.list()] == ["a", "c"]


def test_prune_drops_bindings_to_missing_workspaces(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions")
    live = tmp_path / "ws" / "live"
    live.mkdir(parents=True)
    store.save(binding("kept", workspace=str(live)))
    store.save(binding("gone", workspace=str(tmp_path / "ws" / "removed")))

    assert store.prune() == ["gone"]
    assert store.load("gone") is None
    assert store.load("kept").workspace == str(live)


def test_malformed_file_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text('{"session_id": "broken"}', encoding="utf-8")

    assert SessionStore(tmp_path).load("broken") is None
