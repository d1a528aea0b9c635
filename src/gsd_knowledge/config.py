"""
GSD Knowledge Config -- environment-driven settings for the knowledge store.

Every value is resolved lazily from the environment so tests can override
them per case:

    GSD_KNOWLEDGE_HOME              root of global stores (default ~/.claude)
    GSD_KNOWLEDGE_BUSY_TIMEOUT_MS   SQLite busy timeout (default 5000)
    GSD_KNOWLEDGE_RETRY_ATTEMPTS    write attempts on a locked database (default 3)
    GSD_KNOWLEDGE_RETRY_DELAY       base backoff in seconds (default 0.25)
    GSD_KNOWLEDGE_ADVISORY_LOCK     wrap writes in an flock on <db>.lock (default 0)
    GSD_KNOWLEDGE_EMBEDDING_DIM     pinned embedding dimension (default 512)
    GSD_KNOWLEDGE_MAX_CONTENT_SIZE  largest accepted content, in bytes (default 1000000)

A project can switch the whole system off with ``"knowledge": false`` in
``.planning/config.json``.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("gsd_knowledge.config")

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 0.25  # seconds
DEFAULT_EMBEDDING_DIM = 512
DEFAULT_MAX_CONTENT_SIZE = 1_000_000

PLANNING_DIR = ".planning"
KNOWLEDGE_DIR = "knowledge"


def knowledge_home() -> Path:
    """Resolve GSD_KNOWLEDGE_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("GSD_KNOWLEDGE_HOME", str(Path.home() / ".claude")))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    val = os.environ.get(name, "").strip().lower()
    if not val:
        return default
    return val in ("1", "true", "yes", "on")


class Settings:
    """Resolved configuration for one StoreManager.

    Explicit keyword arguments win over the environment.
    """

    __slots__ = (
        "home",
        "project_dir",
        "busy_timeout_ms",
        "retry_attempts",
        "retry_delay",
        "advisory_lock",
        "embedding_dim",
        "max_content_size",
    )

    def __init__(
        self,
        home: Optional[Union[str, Path]] = None,
        project_dir: Optional[Union[str, Path]] = None,
        busy_timeout_ms: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        advisory_lock: Optional[bool] = None,
        embedding_dim: Optional[int] = None,
        max_content_size: Optional[int] = None,
    ):
        self.home = Path(home) if home is not None else knowledge_home()
        self.project_dir = Path(project_dir) if project_dir is not None else Path.cwd()
        self.busy_timeout_ms = (
            busy_timeout_ms if busy_timeout_ms is not None
            else _env_int("GSD_KNOWLEDGE_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS)
        )
        self.retry_attempts = max(1, (
            retry_attempts if retry_attempts is not None
            else _env_int("GSD_KNOWLEDGE_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS)
        ))
        self.retry_delay = (
            retry_delay if retry_delay is not None
            else _env_float("GSD_KNOWLEDGE_RETRY_DELAY", DEFAULT_RETRY_DELAY)
        )
        self.advisory_lock = (
            advisory_lock if advisory_lock is not None
            else _env_flag("GSD_KNOWLEDGE_ADVISORY_LOCK")
        )
        self.embedding_dim = (
            embedding_dim if embedding_dim is not None
            else _env_int("GSD_KNOWLEDGE_EMBEDDING_DIM", DEFAULT_EMBEDDING_DIM)
        )
        self.max_content_size = (
            max_content_size if max_content_size is not None
            else _env_int("GSD_KNOWLEDGE_MAX_CONTENT_SIZE", DEFAULT_MAX_CONTENT_SIZE)
        )

    def __repr__(self) -> str:
        return (
            f"Settings(home={str(self.home)!r}, project_dir={str(self.project_dir)!r}, "
            f"busy_timeout_ms={self.busy_timeout_ms}, embedding_dim={self.embedding_dim})"
        )


def is_knowledge_enabled(project_dir: Optional[Union[str, Path]] = None) -> bool:
    """Check the project's .planning/config.json for ``"knowledge": false``.

    A missing or unreadable config leaves the system enabled.
    """
    base = Path(project_dir) if project_dir is not None else Path.cwd()
    config_path = base / PLANNING_DIR / "config.json"
    if not config_path.exists():
        return True
    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.debug("Could not read %s: %s", config_path, e)
        return True
    if isinstance(config, dict) and config.get("knowledge") is False:
        return False
    return True
