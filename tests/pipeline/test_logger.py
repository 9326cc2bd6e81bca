# tests/pipeline/test_logger.py
from pathlib import Path
import logging
from logging import StreamHandler, FileHandler
from logging.handlers import RotatingFileHandler

import pytest

from chunkpipe import RunConfig, run_pipeline
from chunkpipe.adapters import MemoryProgressStore, MemorySink, SequenceSource
from chunkpipe.pipeline.logger import run_log_handler, setup_logger

pytestmark = pytest.mark.usefixtures("clean_root_handlers")


@pytest.fixture()
def clean_root_handlers():
    """Start each test with a clean root logger; restore afterwards."""
    root = logging.getLogger()
    prev = list(root.handlers)
    prev_level = root.level
    try:
        for h in list(root.handlers):
            root.removeHandler(h)
        yield
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in prev:
            root.addHandler(h)
        root.setLevel(prev_level)


def _handler_types():
    return {type(h) for h in logging.getLogger().handlers}


def test_creates_log_file_and_writes(tmp_path: Path):
    log_dir = tmp_path / "logs"

    log_path = setup_logger(log_dir, console=False, force=True)
    assert log_path.parent == log_dir
    assert log_path.name.startswith("chunkpipe_")
    assert log_path.suffix == ".log"
    assert log_path.exists()

    logging.getLogger("chunkpipe.test").info("hello world")
    text = log_path.read_text(encoding="utf-8")
    assert "Logging to:" in text
    assert "hello world" in text
    assert "chunkpipe.test" in text


def test_uses_parent_dir_when_path_is_file(tmp_path: Path):
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    progress_file = run_dir / "progress.json"

    log_path = setup_logger(progress_file, console=False, force=True)
    assert log_path.parent == run_dir
    assert log_path.exists()


def test_force_replaces_handlers_and_rotation(tmp_path: Path):
    log_dir = tmp_path / "logs"

    setup_logger(log_dir, console=True, force=True)
    types1 = _handler_types()
    assert FileHandler in types1
    assert StreamHandler in types1

    log_path = setup_logger(log_dir, rotate=True, force=True, run_name="rot")
    types2 = _handler_types()
    assert RotatingFileHandler in types2
    assert StreamHandler not in types2

    logging.getLogger().warning("rotate test")
    assert log_path.exists()
    assert "rotate test" in log_path.read_text(encoding="utf-8")


def test_run_log_handler_captures_package_logs_only(tmp_path: Path):
    package_logger = logging.getLogger("chunkpipe")
    before = list(package_logger.handlers)

    with run_log_handler(tmp_path / "logs", "nightly") as log_path:
        assert log_path.name.startswith("nightly_")
        logging.getLogger("chunkpipe.pipeline.worker").info("chunk done")
        logging.getLogger("someapp").warning("not ours")

    assert package_logger.handlers == before
    text = log_path.read_text(encoding="utf-8")
    assert "Run log:" in text
    assert "chunk done" in text
    assert "not ours" not in text


def test_run_with_log_dir_writes_run_log(tmp_path: Path):
    config = RunConfig(
        chunk_size=10, worker_count=2, queue_capacity=2, poll_interval_s=0.01,
        run_name="squares", log_dir=tmp_path / "logs",
    )
    report = run_pipeline(
        SequenceSource(list(range(30))), MemorySink(), MemoryProgressStore(), config,
        transform=lambda r: r * r,
    )
    assert report.ok

    logs = list((tmp_path / "logs").glob("squares_*.log"))
    assert len(logs) == 1
    text = logs[0].read_text(encoding="utf-8")
    assert "Chunked Batch Configuration" in text
    assert "State running -> completed" in text
    assert "Run completed: committed offset 30" in text
    assert "chunkpipe:reader" in text
