import json

from mediarelay.config import settings
from mediarelay.services import logger
from mediarelay.utils.exceptions import (
    StaleHandleError,
    UploadTooLargeError,
    get_error_response,
    is_retryable,
)


def test_logs_are_buffered_and_persisted(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(settings, "LOG_DIR", str(tmp_path))
    monkeypatch.setattr(logger, "_log_file", None)

    logger.info("cache warmed", "cache", {"entries": 3})
    logger.warn("instance slow", "resolver")

    cache_logs = logger.get_logs(limit=10, category="cache")
    assert cache_logs[-1]["message"] == "cache warmed"
    assert cache_logs[-1]["details"] == {"entries": 3}
    assert logger.get_logs(limit=1, level="WARN")[-1]["message"] == "instance slow"

    lines = (tmp_path / "service.jsonl").read_text().splitlines()
    assert json.loads(lines[-1])["category"] == "resolver"


def test_error_helpers() -> None:
    assert is_retryable(StaleHandleError())
    assert not is_retryable(UploadTooLargeError())
    assert is_retryable(RuntimeError("unknown"))

    assert get_error_response(UploadTooLargeError())["error_code"] == "UPLOAD_TOO_LARGE"
    assert get_error_response(RuntimeError("boom")) == {
        "error_code": "INTERNAL_ERROR",
        "message": "boom",
        "retryable": True,
        "user_message": "An unexpected error occurred. Please try again.",
    }
