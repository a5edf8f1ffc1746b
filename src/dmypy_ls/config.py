"""Per-workspace configuration and dmypy command resolution."""

import hashlib
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field

from dmypy_ls.daemon.protocol import DEFAULT_MYPY_FLAGS, LaunchSpec
from dmypy_ls.errors import ConfigError, SpawnFailure

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "dmypyls.toml"
PYPROJECT_FILENAME = "pyproject.toml"


def user_config_dir() -> Path:
    """User-level configuration directory ($XDG_CONFIG_HOME/dmypyls)."""
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base) / "dmypyls"


def user_state_dir() -> Path:
    """User-level state directory for logs ($XDG_STATE_HOME/dmypyls)."""
    base = os.environ.get("XDG_STATE_HOME") or Path.home() / ".local" / "state"
    return Path(base) / "dmypyls"


def default_status_file(workspace_root: Path) -> Path:
    """dmypy status file owned by this process for ``workspace_root``.

    Each server process runs its own daemon for a workspace.
    """
    digest = hashlib.sha256(str(workspace_root).encode()).hexdigest()[:16]
    return user_state_dir() / "status" / f"{digest}-{os.getpid()}.json"


class Config(BaseModel):
    """Workspace configuration: how to run dmypy and the scheduling/restart policy."""

    model_config = ConfigDict(frozen=True)

    workspace_root: Path = Field(description="Project root the daemon serves")
    config_path: Path | None = Field(default=None, description="File the settings were read from, if any")
    dmypy_command: tuple[str, ...] = Field(default=("dmypy",), description="Command vector that runs dmypy")
    mypy_flags: tuple[str, ...] = Field(default=DEFAULT_MYPY_FLAGS, description="Flags the daemon is started with")
    extra_mypy_flags: tuple[str, ...] = Field(default=(), description="Flags appended to mypy_flags")
    status_file: Path | None = Field(default=None, description="dmypy status file, relative to the workspace root")
    change_debounce: float = Field(default=0.3, ge=0, description="Quiet period after an edit before checking, seconds")
    open_debounce: float = Field(default=0.05, ge=0, description="Coalescing window for open/save events, seconds")
    submit_timeout: float = Field(default=30.0, gt=0, description="Seconds before an unanswered command counts as a crash")
    start_timeout: float = Field(default=10.0, gt=0, description="Seconds to wait for the daemon to come up")
    stop_grace: float = Field(default=3.0, ge=0, description="Seconds to wait for a graceful stop before terminating")
    crash_threshold: int = Field(default=3, ge=1, description="Crashes within crash_window before giving up")
    crash_window: float = Field(default=60.0, gt=0, description="Window for counting consecutive crashes, seconds")

    @computed_field(description="Log file")
    @property
    def log_path(self) -> Path:
        """Log file."""
        return user_state_dir() / "dmypyls.log"

    @computed_field(description="dmypy status file")
    @property
    def status_path(self) -> Path:
        """dmypy status file the daemon is started with."""
        if self.status_file is not None:
            return self.workspace_root / self.status_file
        return default_status_file(self.workspace_root)

    def launch_spec(self) -> LaunchSpec:
        """Build the launch command for the daemon.

        Raises:
            SpawnFailure: No dmypy command is configured.

        """
        if not self.dmypy_command:
            raise SpawnFailure(f"No dmypy command found (see {CONFIG_FILENAME} in README.md)")
        argv = list(self.dmypy_command)
        argv.extend(["--status-file", str(self.status_path)])
        return LaunchSpec(argv=tuple(argv), cwd=self.workspace_root, flags=(*self.mypy_flags, *self.extra_mypy_flags))

    @staticmethod
    def build(workspace_root: Path) -> "Config":
        """Build a Config from defaults and the nearest configuration file.

        Project-level settings win over user-level ones; the two are not merged.

        Raises:
            ConfigError: A configuration file exists but is invalid.

        """
        root = workspace_root.resolve()
        kwargs: dict[str, Any] = {"workspace_root": root}
        found = find_config(root)
        if found is not None:
            path, data = found
            kwargs["config_path"] = path
            kwargs.update({k: v for k, v in data.items() if k in _FILE_KEYS})
            logger.info("Configuration read from %s", path)
        else:
            logger.info("No configuration found for %s; using defaults", root)
        try:
            return Config(**kwargs)
        except ValidationError as e:
            msg = f"Invalid configuration in {kwargs.get('config_path')}: {e}"
            raise ConfigError(msg) from e


_FILE_KEYS = frozenset(Config.model_fields) - {"workspace_root", "config_path"}


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        msg = f"Cannot read {path}: {e}"
        raise ConfigError(msg) from e


def find_config(start: Path) -> tuple[Path, dict[str, Any]] | None:
    """Find settings by searching upward from ``start``, then at the user level.

    A directory provides settings through ``dmypyls.toml`` or a ``[tool.dmypyls]``
    table in ``pyproject.toml``; the former wins within one directory.
    """
    for directory in (start, *start.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate, _read_toml(candidate)
        pyproject = directory / PYPROJECT_FILENAME
        if pyproject.is_file():
            table = _read_toml(pyproject).get("tool", {}).get("dmypyls")
            if isinstance(table, dict):
                return pyproject, table

    user_config = user_config_dir() / CONFIG_FILENAME
    if user_config.is_file():
        return user_config, _read_toml(user_config)
    return None


def resolve_command(workspace_root: Path) -> LaunchSpec:
    """Resolve the daemon launch command for a workspace, re-reading configuration.

    Raises:
        SpawnFailure: Configuration is invalid or names no command.

    """
    try:
        cfg = Config.build(workspace_root)
    except ConfigError as e:
        raise SpawnFailure(str(e)) from e
    spec = cfg.launch_spec()
    try:
        cfg.status_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SpawnFailure(f"Cannot create {cfg.status_path.parent}: {e}") from e
    return spec
