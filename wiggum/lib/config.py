"""
Configuration loaders for wiggum.

Loads project settings from .wiggum/config.env, with process environment
variables taking precedence, and locates the project's ticket directories.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from .constants import (
    WIGGUM_DIR_NAME,
    ORIGIN_DIR_NAME,
    REPLICA_DIR_NAME,
    HOOKS_DIR_NAME,
    TICKET_TYPES_FILE,
    CONFIG_FILE,
    HOOK_LOG_FILE,
    DEFAULT_BRANCH,
)

logger = logging.getLogger(__name__)

DEFAULT_HOOK_TIMEOUT = 300

# Keys read from config.env and from the environment
CONFIG_KEYS = (
    "WIGGUM_SESSION",
    "WIGGUM_AUTO_SYNC",
    "WIGGUM_AGENT_ID",
    "WIGGUM_HOOK_TIMEOUT",
    "WIGGUM_BRANCH",
    "WIGGUM_TICKETS_DIR",
)


class ProjectNotFound(Exception):
    """No .wiggum directory above the starting directory."""


@dataclass
class WiggumConfig:
    """Project-level settings from config.env plus environment overrides."""
    project_root: Path
    session: str
    auto_sync: bool
    agent_id: str | None
    hook_timeout: int
    branch: str
    # Replica to operate on; defaults to the coordinator clone under .wiggum/
    replica_dir: Path | None = None

    @property
    def wiggum_dir(self) -> Path:
        return self.project_root / WIGGUM_DIR_NAME

    @property
    def origin_dir(self) -> Path:
        return self.wiggum_dir / ORIGIN_DIR_NAME

    @property
    def tickets_dir(self) -> Path:
        if self.replica_dir is not None:
            return self.replica_dir
        return self.wiggum_dir / REPLICA_DIR_NAME

    @property
    def hooks_dir(self) -> Path:
        return self.wiggum_dir / HOOKS_DIR_NAME

    @property
    def ticket_types_path(self) -> Path:
        return self.wiggum_dir / TICKET_TYPES_FILE

    @property
    def hook_log_path(self) -> Path:
        return self.wiggum_dir / HOOK_LOG_FILE


def find_project_root(start: Path | None = None, environ: dict | None = None) -> Path:
    """Return the nearest directory at or above start containing .wiggum/.

    WIGGUM_PROJECT_ROOT in the environment short-circuits the search.

    Raises:
        ProjectNotFound: if no project directory exists above start
    """
    env = os.environ if environ is None else environ
    override = env.get("WIGGUM_PROJECT_ROOT")
    if override:
        root = Path(override)
        if (root / WIGGUM_DIR_NAME).is_dir():
            return root
        raise ProjectNotFound(f"WIGGUM_PROJECT_ROOT={override} has no {WIGGUM_DIR_NAME} directory")

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / WIGGUM_DIR_NAME).is_dir():
            return candidate
    raise ProjectNotFound("Not in a wiggum project. Run 'wiggum init' first.")


def load_config(project_root: Path, environ: dict | None = None) -> WiggumConfig:
    """Load config.env (if present) and apply environment overrides.

    Raises:
        ValueError: if config.env is malformed
    """
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}

    config_path = project_root / WIGGUM_DIR_NAME / CONFIG_FILE
    if config_path.exists():
        logger.debug(f"Loading config from {config_path}")
        values.update(envparse.load_env(config_path))

    for key in CONFIG_KEYS:
        if env.get(key):
            values[key] = env[key]

    timeout_str = values.get("WIGGUM_HOOK_TIMEOUT", str(DEFAULT_HOOK_TIMEOUT))
    try:
        hook_timeout = int(timeout_str)
    except ValueError:
        logger.warning(f"Invalid WIGGUM_HOOK_TIMEOUT '{timeout_str}', using {DEFAULT_HOOK_TIMEOUT}")
        hook_timeout = DEFAULT_HOOK_TIMEOUT

    return WiggumConfig(
        project_root=project_root,
        session=values.get("WIGGUM_SESSION") or f"wiggum-{project_root.name}",
        auto_sync=envparse.parse_bool(values.get("WIGGUM_AUTO_SYNC"), default=True),
        agent_id=values.get("WIGGUM_AGENT_ID") or None,
        hook_timeout=hook_timeout,
        branch=values.get("WIGGUM_BRANCH") or DEFAULT_BRANCH,
        replica_dir=Path(values["WIGGUM_TICKETS_DIR"]) if values.get("WIGGUM_TICKETS_DIR") else None,
    )


def write_default_config(project_root: Path) -> Path:
    """Write a starter config.env; existing files are left alone."""
    config_path = project_root / WIGGUM_DIR_NAME / CONFIG_FILE
    if config_path.exists():
        return config_path
    config_path.write_text(f'''# wiggum configuration

# Session identifier passed to hooks
WIGGUM_SESSION="wiggum-{project_root.name}"

# Pull before reads/writes and push after writes
WIGGUM_AUTO_SYNC="true"

# Seconds a pre-transition hook may run before it counts as a veto
WIGGUM_HOOK_TIMEOUT="{DEFAULT_HOOK_TIMEOUT}"

# Branch on the tickets origin
WIGGUM_BRANCH="{DEFAULT_BRANCH}"
''')
    return config_path
