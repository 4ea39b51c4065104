from __future__ import annotations

from pathlib import Path

import pytest

from w2vu_pipeline.errors import CheckpointError
from w2vu_pipeline.pipeline.checkpointing import CheckpointStore, StepStatus


def test_missing_file_means_nothing_recorded(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "progress.checkpoint")

    assert not store.is_completed("prepare_audio")
    assert not store.is_in_progress("prepare_audio")
    assert store.status("prepare_audio") is StepStatus.ABSENT
    assert store.snapshot() == {}


def test_completed_is_monotonic(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "progress.checkpoint")

    store.mark_in_progress("train_gans")
    assert store.is_in_progress("train_gans")
    assert not store.is_completed("train_gans")

    store.mark_completed("train_gans")
    assert store.is_completed("train_gans")
    assert not store.is_in_progress("train_gans")

    store.mark_in_progress("train_gans")
    assert store.is_completed("train_gans")
    assert store.status("train_gans") is StepStatus.COMPLETED


def test_mark_in_progress_keeps_a_single_line(tmp_path: Path) -> None:
    path = tmp_path / "progress.checkpoint"
    store = CheckpointStore(path)

    store.mark_in_progress("remove_silence")
    store.mark_in_progress("prepare_text")
    store.mark_in_progress("remove_silence")

    lines = path.read_text().splitlines()
    assert lines.count("remove_silence:IN_PROGRESS") == 1
    assert lines == ["prepare_text:IN_PROGRESS", "remove_silence:IN_PROGRESS"]


def test_file_format_is_name_colon_status(tmp_path: Path) -> None:
    path = tmp_path / "ck" / "progress.checkpoint"
    store = CheckpointStore(path)

    store.mark_in_progress("create_manifests_train")
    store.mark_completed("create_manifests_train")

    assert path.read_text() == "create_manifests_train:IN_PROGRESS\ncreate_manifests_train:COMPLETED\n"


def test_malformed_lines_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "progress.checkpoint"
    path.write_text("garbage\nprepare_audio:DONE\n:COMPLETED\nprepare_audio:COMPLETED\nhalf-written:COMPL")
    store = CheckpointStore(path)

    assert store.is_completed("prepare_audio")
    assert store.status("half-written") is StepStatus.ABSENT
    assert store.snapshot() == {"prepare_audio": StepStatus.COMPLETED}


def test_mark_in_progress_is_best_effort(tmp_path: Path) -> None:
    # a directory where the file should be makes every write fail
    path = tmp_path / "progress.checkpoint"
    path.mkdir()
    store = CheckpointStore(path)

    store.mark_in_progress("prepare_audio")

    with pytest.raises(CheckpointError):
        store.mark_completed("prepare_audio")


def test_compact_keeps_replayed_state(tmp_path: Path) -> None:
    path = tmp_path / "progress.checkpoint"
    path.write_text(
        "a:IN_PROGRESS\n"
        "a:COMPLETED\n"
        "b:IN_PROGRESS\n"
        "noise\n"
        "a:IN_PROGRESS\n"
        "c:IN_PROGRESS\n"
        "c:COMPLETED\n"
    )
    store = CheckpointStore(path)
    before = store.snapshot()

    dropped = store.compact()

    assert dropped == 4
    assert path.read_text() == "a:COMPLETED\nb:IN_PROGRESS\nc:COMPLETED\n"
    assert store.snapshot() == before
