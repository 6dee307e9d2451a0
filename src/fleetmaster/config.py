"""Configuration management for Fleetmaster.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to FleetmasterConfig constructor)
2. Environment variables (FLEETMASTER_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [fleet]
    session_prefix = "gt"

    [sessions]
    ready_timeout_seconds = 45

Example environment variable override:
    FLEETMASTER_BEADS__COMMAND="/usr/local/bin/bd"
    FLEETMASTER_SHUTDOWN__WAIT_SECONDS=60
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stderr only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="WARNING")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class FleetConfig(BaseSettings):
    """Fleet layout and session naming conventions.

    Attributes:
        town_root: Explicit fleet root (None to search upward from cwd)
        session_prefix: Prefix carried by every fleet session name
        mayor_role: Role segment of the coordinator singleton
        deacon_role: Role segment of the supervisor singleton
        crew_segment: Role segment marking persistent named workers
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_FLEET__",
        extra="forbid",
    )

    town_root: Path | None = Field(default=None)
    session_prefix: str = Field(default="gt", min_length=1)
    mayor_role: str = Field(default="mayor")
    deacon_role: str = Field(default="deacon")
    crew_segment: str = Field(default="crew")

    @field_validator("session_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Session prefixes may not contain the name delimiter."""
        if "-" in v:
            raise ValueError(f"Invalid session prefix: {v!r} (must not contain '-')")
        return v

    @property
    def mayor_session(self) -> str:
        """Reserved session name of the coordinator."""
        return f"{self.session_prefix}-{self.mayor_role}"

    @property
    def deacon_session(self) -> str:
        """Reserved session name of the supervisor."""
        return f"{self.session_prefix}-{self.deacon_role}"


class BeadsConfig(BaseSettings):
    """Work-item store configuration.

    Attributes:
        command: Store executable invoked per operation
        timeout_seconds: Timeout for a single store call
        bead_id_pattern: Regex for identifiers accepted optimistically
        town_prefix: Identifier prefix of fleet-wide (town) items
        convoy_title_prefix: Title prefix for auto-created convoys
        onboarding_formula: Formula attached to freshly spawned polecats
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_BEADS__",
        extra="forbid",
    )

    command: str = Field(default="bd")
    timeout_seconds: int = Field(default=30, ge=1, le=600)
    bead_id_pattern: str = Field(default=r"^[a-z][a-z0-9]{0,9}-[a-z0-9][a-z0-9.\-]*$")
    town_prefix: str = Field(default="hq")
    convoy_title_prefix: str = Field(default="Work: ")
    onboarding_formula: str = Field(default="mol-polecat-work")


class SessionConfig(BaseSettings):
    """Terminal multiplexer and agent runtime configuration.

    Attributes:
        command: Multiplexer executable
        ready_timeout_seconds: Upper bound on waiting for a session to be ready
        ready_poll_interval: Seconds between readiness probes
        shell_commands: Pane commands meaning the runtime has not started yet
        default_runtime: Runtime alias used when no override is given
        runtimes: Alias to launch command mapping
        accounts: Account handle to runtime config directory mapping
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_SESSIONS__",
        extra="forbid",
    )

    command: str = Field(default="tmux")
    ready_timeout_seconds: float = Field(default=30.0, ge=0.0, le=600.0)
    ready_poll_interval: float = Field(default=0.5, gt=0.0, le=10.0)
    shell_commands: list[str] = Field(
        default_factory=lambda: ["bash", "zsh", "sh", "fish", "dash"]
    )
    default_runtime: str = Field(default="claude")
    runtimes: dict[str, str] = Field(
        default_factory=lambda: {
            "claude": "claude --dangerously-skip-permissions",
            "gemini": "gemini",
            "codex": "codex",
        }
    )
    accounts: dict[str, Path] = Field(default_factory=dict)


class GitConfig(BaseSettings):
    """Git operations configuration.

    Attributes:
        main_branch: Base branch ephemeral working copies are cut from
        polecat_branch_prefix: Branch prefix for ephemeral worker branches
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_GIT__",
        extra="forbid",
    )

    main_branch: str = Field(default="main")
    polecat_branch_prefix: str = Field(default="polecat/")


class PoolConfig(BaseSettings):
    """Ephemeral worker naming pool.

    Attributes:
        polecat_names: Names handed out in order to freshly spawned polecats
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_POOL__",
        extra="forbid",
    )

    polecat_names: list[str] = Field(
        default_factory=lambda: [
            "ace", "bolt", "cinder", "dash", "ember", "flint", "gale", "haze",
            "ion", "jolt", "knox", "lark", "moss", "nova", "onyx", "pike",
            "quill", "rook", "sage", "tern", "umber", "vale", "wren", "zephyr",
        ]
    )


class ShutdownConfig(BaseSettings):
    """Fleet shutdown configuration.

    Attributes:
        wait_seconds: Default graceful handoff window
        stagger_seconds: Delay before each shutdown notice
        countdown_interval_seconds: Interval between remaining-time reports
        shutdown_message: Structured notice sent during graceful shutdown
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_SHUTDOWN__",
        extra="forbid",
    )

    wait_seconds: int = Field(default=30, ge=0, le=3600)
    stagger_seconds: float = Field(default=0.5, ge=0.0, le=10.0)
    countdown_interval_seconds: int = Field(default=5, ge=1, le=60)
    shutdown_message: str = Field(
        default=(
            "[SHUTDOWN] The fleet is shutting down. Please save your state and "
            "update your handoff bead, then type /exit or wait to be terminated."
        )
    )


class FleetmasterConfig(BaseSettings):
    """Root configuration for Fleetmaster.

    Aggregates all subsystem configurations. Environment variable format
    for nested config:
        FLEETMASTER_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETMASTER_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    fleet: FleetConfig = Field(default_factory=FleetConfig)
    beads: BeadsConfig = Field(default_factory=BeadsConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)


def load_config(config_path: Path | None = None) -> FleetmasterConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./fleetmaster.toml (current directory)
    3. ~/.config/fleetmaster/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        FleetmasterConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "fleetmaster.toml",
            Path.home() / ".config" / "fleetmaster" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    try:
        return FleetmasterConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
