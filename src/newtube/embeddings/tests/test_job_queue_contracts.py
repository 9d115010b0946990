from __future__ import annotations

from pathlib import Path


def _find_repo_root(start: Path) -> Path:
    cur = start.resolve()
    for _ in range(12):
        if (cur / "pyproject.toml").is_file() and (cur / "src").is_dir():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    raise AssertionError("Could not locate repo root (expected pyproject.toml + src/)")


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _extract_method_block(text: str, *, method_name: str) -> str:
    lines = text.splitlines()
    start = None
    indent = None
    for i, line in enumerate(lines):
        if line.lstrip().startswith(f"def {method_name}("):
            start = i
            indent = len(line) - len(line.lstrip())
            break
    assert start is not None and indent is not None, f"Missing method: {method_name}"

    end = len(lines)
    for j in range(start + 1, len(lines)):
        line = lines[j]
        if not line.strip() or line.lstrip().startswith(("#", ")")):
            continue
        if len(line) - len(line.lstrip()) <= indent:
            end = j
            break
    return "\n".join(lines[start:end])


def _services_dir() -> Path:
    root = _find_repo_root(Path(__file__))
    return root / "src" / "newtube" / "embeddings" / "services"


def test_poll_next_job_uses_skip_locked_on_postgres() -> None:
    svc = _services_dir() / "job_service.py"
    assert svc.is_file()
    block = _extract_method_block(_read(svc), method_name="poll_next_job")

    assert 'dialect == "postgresql"' in block
    assert "with_for_update(skip_locked=True)" in block


def test_job_row_writes_hold_the_row_lock() -> None:
    text = _read(_services_dir() / "job_service.py")
    for method in ("_claim_or_skip", "transition", "heartbeat", "materialize_items"):
        block = _extract_method_block(text, method_name=method)
        assert "with job_row_lock:" in block, method


def test_progress_update_is_bounded_by_total() -> None:
    text = _read(_services_dir() / "progress.py")
    block = _extract_method_block(text, method_name="record_item_result")
    assert "EmbeddingJob.processed_items < EmbeddingJob.total_items" in block
    assert "with job_row_lock:" in block
