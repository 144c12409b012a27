"""Service logging with an in-memory buffer and JSON-lines persistence."""

import json
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mediarelay.config import settings


_log_lock = threading.Lock()
_log_buffer: deque = deque(maxlen=2000)  # Keep last 2000 entries in memory
_log_file: Optional[Path] = None
_log_sequence: int = 0  # Global sequence number for ordering


def _get_log_file() -> Path:
    """Get the log file path, creating directory if needed."""
    global _log_file
    if _log_file is None:
        if settings.LOG_DIR:
            log_dir = Path(settings.LOG_DIR)
        else:
            log_dir = Path(settings.TEMP_DIR) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        _log_file = log_dir / "service.jsonl"
    return _log_file


def log(level: str, message: str, category: str = "general", details: Optional[dict] = None):
    """
    Log a message with optional details.

    Args:
        level: Log level (INFO, WARN, ERROR, DEBUG, SUCCESS)
        message: Log message
        category: Category (resolver, ytdlp, provider, queue, cache, storage, delivery, api)
        details: Optional additional details dict
    """
    global _log_sequence

    with _log_lock:
        _log_sequence += 1
        seq = _log_sequence

    entry = {
        "seq": seq,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": level,
        "category": category,
        "message": message,
    }
    if details:
        entry["details"] = details

    with _log_lock:
        _log_buffer.append(entry)

        try:
            log_file = _get_log_file()
            with open(log_file, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError:
            # Logging must never break a request
            pass

    print(f"[{entry['timestamp']}] [{level}] [{category}] {message}", flush=True)


def get_logs(limit: int = 100, category: Optional[str] = None, level: Optional[str] = None) -> list:
    """
    Get recent logs from memory buffer.

    Args:
        limit: Maximum number of logs to return
        category: Filter by category
        level: Filter by level
    """
    with _log_lock:
        logs = list(_log_buffer)

    if category:
        logs = [l for l in logs if l.get("category") == category]
    if level:
        logs = [l for l in logs if l.get("level") == level]

    return logs[-limit:]


# Convenience functions
def info(message: str, category: str = "general", details: Optional[dict] = None):
    log("INFO", message, category, details)

def warn(message: str, category: str = "general", details: Optional[dict] = None):
    log("WARN", message, category, details)

def error(message: str, category: str = "general", details: Optional[dict] = None):
    log("ERROR", message, category, details)

def debug(message: str, category: str = "general", details: Optional[dict] = None):
    log("DEBUG", message, category, details)

def success(message: str, category: str = "general", details: Optional[dict] = None):
    log("SUCCESS", message, category, details)


class YtdlpLogger:
    """Logger handed to yt-dlp so its output lands in the service log."""

    def __init__(self, source_id: str):
        self.source_id = source_id

    def debug(self, msg):
        if msg.startswith('[debug]'):
            log("DEBUG", msg, "ytdlp", {"source_id": self.source_id})
        else:
            # yt-dlp uses debug for informational messages too
            log("INFO", msg, "ytdlp", {"source_id": self.source_id})

    def info(self, msg):
        log("INFO", msg, "ytdlp", {"source_id": self.source_id})

    def warning(self, msg):
        log("WARN", msg, "ytdlp", {"source_id": self.source_id})

    def error(self, msg):
        log("ERROR", msg, "ytdlp", {"source_id": self.source_id})
