"""Configuration loaded from environment variables and YAML.

All settings have sensible defaults. Override via AUGMENT_* env vars or
an ``augments:`` section in a YAML file.

Example YAML:
    augments:
      write_max_bytes: 65536
      read_max_bytes: 65536
      max_in_flight: 8
      coalesce_window_seconds: 0.05
      heartbeat_interval_seconds: 30
      render_markdown: true
      tool_generators:
        Edit: edit
        MultiEdit: edit
        Write: write
        Read: read
        ExitPlanMode: plan
        NotebookEdit: edit
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

GENERATOR_KINDS = frozenset({"edit", "write", "read", "plan"})

DEFAULT_TOOL_GENERATORS: dict[str, str] = {
    "Edit": "edit",
    "MultiEdit": "edit",
    "Write": "write",
    "Read": "read",
    "ExitPlanMode": "plan",
}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AugmentLimits:
    """Per-kind size limits handed to the augment generators."""
    write_max_bytes: int = 100_000
    read_max_bytes: int = 100_000
    edit_max_bytes: int = 200_000


@dataclass
class AugmentConfig:
    """Augmentation pipeline configuration."""

    # Highlighting truncation limits (UTF-8 bytes)
    write_max_bytes: int = 100_000
    read_max_bytes: int = 100_000
    # Edits larger than this (before + after) get a plain-text augment
    edit_max_bytes: int = 200_000

    # Augment computations allowed in flight per session
    max_in_flight: int = 4

    # Pending deltas for one block within this window merge into one event.
    # Set to 0 to disable coalescing.
    coalesce_window_seconds: float = 0.05
    heartbeat_interval_seconds: float = 30.0

    # Render completed prose/code blocks to HTML
    render_markdown: bool = True
    # Run sync generators in a worker thread
    offload_highlighting: bool = True

    # Tool name -> generator kind (edit | write | read | plan)
    tool_generators: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_TOOL_GENERATORS)
    )

    # Logging
    log_level: str = "INFO"

    @property
    def limits(self) -> AugmentLimits:
        return AugmentLimits(
            write_max_bytes=self.write_max_bytes,
            read_max_bytes=self.read_max_bytes,
            edit_max_bytes=self.edit_max_bytes,
        )

    def validate(self) -> AugmentConfig:
        for key in ("write_max_bytes", "read_max_bytes", "edit_max_bytes", "max_in_flight"):
            if int(getattr(self, key)) <= 0:
                raise ConfigError(key, "must be a positive integer")
        if self.coalesce_window_seconds < 0:
            raise ConfigError("coalesce_window_seconds", "must not be negative")
        if self.heartbeat_interval_seconds <= 0:
            raise ConfigError("heartbeat_interval_seconds", "must be positive")
        for tool_name, kind in self.tool_generators.items():
            if kind not in GENERATOR_KINDS:
                raise ConfigError(
                    f"tool_generators.{tool_name}",
                    f"unknown generator '{kind}' (expected one of "
                    f"{', '.join(sorted(GENERATOR_KINDS))})",
                )
        return self

    @classmethod
    def from_env(cls) -> AugmentConfig:
        """Load configuration from AUGMENT_* environment variables."""
        augment_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AUGMENT_")
        }
        if augment_vars:
            logger.info(
                "AugmentConfig.from_env: AUGMENT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(augment_vars.items())),
            )
        else:
            logger.debug("AugmentConfig.from_env: no AUGMENT_* env vars set, using defaults")

        try:
            config = cls(
                write_max_bytes=int(os.getenv(
                    "AUGMENT_WRITE_MAX_BYTES", str(cls.write_max_bytes)
                )),
                read_max_bytes=int(os.getenv(
                    "AUGMENT_READ_MAX_BYTES", str(cls.read_max_bytes)
                )),
                edit_max_bytes=int(os.getenv(
                    "AUGMENT_EDIT_MAX_BYTES", str(cls.edit_max_bytes)
                )),
                max_in_flight=int(os.getenv(
                    "AUGMENT_MAX_IN_FLIGHT", str(cls.max_in_flight)
                )),
                coalesce_window_seconds=float(os.getenv(
                    "AUGMENT_COALESCE_WINDOW", str(cls.coalesce_window_seconds)
                )),
                heartbeat_interval_seconds=float(os.getenv(
                    "AUGMENT_HEARTBEAT_INTERVAL",
                    str(cls.heartbeat_interval_seconds),
                )),
                render_markdown=os.getenv(
                    "AUGMENT_RENDER_MARKDOWN", "1"
                ).lower() in _TRUTHY,
                offload_highlighting=os.getenv(
                    "AUGMENT_OFFLOAD_HIGHLIGHTING", "1"
                ).lower() in _TRUTHY,
                log_level=os.getenv("AUGMENT_LOG_LEVEL", cls.log_level),
            )
        except ValueError as exc:
            raise ConfigError("AUGMENT_*", str(exc)) from exc
        return config.validate()


def load_yaml_config(path: str | Path, *, base: AugmentConfig | None = None) -> AugmentConfig:
    """Load the ``augments:`` section of a YAML file over ``base``.

    When ``base`` is None the env-derived configuration is used, so YAML
    values win over AUGMENT_* variables.
    """
    path = Path(path)
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    section = raw.get("augments") or {}
    if not isinstance(section, dict):
        raise ConfigError("augments", "must be a mapping")

    config = base or AugmentConfig.from_env()
    known = {f.name for f in fields(AugmentConfig)}
    values: dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown augments key in %s: %s", path, key)
            continue
        if key == "tool_generators":
            if not isinstance(value, dict):
                raise ConfigError("tool_generators", "must be a mapping")
            merged = dict(config.tool_generators)
            for tool_name, kind in value.items():
                if kind is None:
                    merged.pop(str(tool_name), None)
                else:
                    merged[str(tool_name)] = str(kind)
            values[key] = merged
            continue
        values[key] = value

    for f in fields(AugmentConfig):
        if f.name not in values:
            values[f.name] = getattr(config, f.name)
    try:
        for key in ("write_max_bytes", "read_max_bytes", "edit_max_bytes", "max_in_flight"):
            values[key] = int(values[key])
        for key in ("coalesce_window_seconds", "heartbeat_interval_seconds"):
            values[key] = float(values[key])
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(path), str(exc)) from exc
    loaded = AugmentConfig(**values).validate()
    logger.info(
        "Loaded augment config from %s: in_flight=%d coalesce=%.3fs tools=%s",
        path, loaded.max_in_flight, loaded.coalesce_window_seconds,
        ",".join(sorted(loaded.tool_generators)),
    )
    return loaded
