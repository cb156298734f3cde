"""Operational config loader."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import cast

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".procpilot"
CONFIG_FILENAME = "config.toml"
_FORK_RETRIES_MIN = 1
_FORK_RETRIES_MAX = 3


@dataclass(frozen=True, slots=True)
class ProcpilotConfig:
    """Resolved operational configuration for procpilot."""

    fork_retries: int = 1
    restart_exit_code: int = 0
    fork_backoff_seconds: float = 0.0
    kill_grace_seconds: float = 2.0
    exit_code_grace_seconds: float = 2.0
    wait_timeout_seconds: float = 600.0
    log_dir: str = ".procpilot/logs"
    join_streams: bool = False
    shell: bool = False


_SECTION_KEY_MAP: dict[str, dict[str, str]] = {
    "defaults": {
        "fork_retries": "fork_retries",
        "restart_exit_code": "restart_exit_code",
        "restart_code": "restart_exit_code",
        "fork_backoff_seconds": "fork_backoff_seconds",
        "shell": "shell",
    },
    "timeouts": {
        "kill_grace_seconds": "kill_grace_seconds",
        "exit_code_grace_seconds": "exit_code_grace_seconds",
        "wait_seconds": "wait_timeout_seconds",
        "wait_timeout_seconds": "wait_timeout_seconds",
    },
    "logs": {
        "dir": "log_dir",
        "log_dir": "log_dir",
        "join_streams": "join_streams",
    },
}

_TOP_LEVEL_KEY_MAP: dict[str, str] = {field.name: field.name for field in fields(ProcpilotConfig)}

_ENV_OVERRIDE_MAP: dict[str, str] = {
    "PROCPILOT_FORK_RETRIES": "fork_retries",
    "PROCPILOT_RESTART_EXIT_CODE": "restart_exit_code",
    "PROCPILOT_FORK_BACKOFF_SECONDS": "fork_backoff_seconds",
    "PROCPILOT_KILL_GRACE_SECONDS": "kill_grace_seconds",
    "PROCPILOT_EXIT_CODE_GRACE_SECONDS": "exit_code_grace_seconds",
    "PROCPILOT_WAIT_TIMEOUT_SECONDS": "wait_timeout_seconds",
    "PROCPILOT_LOG_DIR": "log_dir",
    "PROCPILOT_JOIN_STREAMS": "join_streams",
    "PROCPILOT_SHELL": "shell",
}

_INT_FIELDS = frozenset({"fork_retries", "restart_exit_code"})
_FLOAT_FIELDS = frozenset(
    {
        "fork_backoff_seconds",
        "kill_grace_seconds",
        "exit_code_grace_seconds",
        "wait_timeout_seconds",
    }
)
_BOOL_FIELDS = frozenset({"join_streams", "shell"})
_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def config_path(root: Path) -> Path:
    return root / CONFIG_DIRNAME / CONFIG_FILENAME


def _expected_type_name(field_name: str) -> str:
    if field_name in _INT_FIELDS:
        return "int"
    if field_name in _FLOAT_FIELDS:
        return "float"
    if field_name in _BOOL_FIELDS:
        return "bool"
    return "str"


def _coerce_file_value(*, field_name: str, raw_value: object, source: str) -> object:
    expected = _expected_type_name(field_name)
    if expected == "int":
        if isinstance(raw_value, bool) or not isinstance(raw_value, int):
            raise ValueError(
                f"Invalid value for '{source}': expected int, got "
                f"{type(raw_value).__name__} ({raw_value!r})."
            )
        return raw_value

    if expected == "float":
        if isinstance(raw_value, bool) or not isinstance(raw_value, int | float):
            raise ValueError(
                f"Invalid value for '{source}': expected float, got "
                f"{type(raw_value).__name__} ({raw_value!r})."
            )
        return float(raw_value)

    if expected == "bool":
        if not isinstance(raw_value, bool):
            raise ValueError(
                f"Invalid value for '{source}': expected bool, got "
                f"{type(raw_value).__name__} ({raw_value!r})."
            )
        return raw_value

    if not isinstance(raw_value, str):
        raise ValueError(
            f"Invalid value for '{source}': expected str, got "
            f"{type(raw_value).__name__} ({raw_value!r})."
        )
    normalized = raw_value.strip()
    if not normalized:
        raise ValueError(f"Invalid value for '{source}': expected non-empty string.")
    return normalized


def _coerce_env_value(*, field_name: str, raw_value: str, env_name: str) -> object:
    expected = _expected_type_name(field_name)
    if expected == "int":
        try:
            return int(raw_value.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected int, got {raw_value!r}."
            ) from error

    if expected == "float":
        try:
            return float(raw_value.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected float, got {raw_value!r}."
            ) from error

    normalized = raw_value.strip()
    if expected == "bool":
        lowered = normalized.lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(
            f"Invalid environment override '{env_name}': expected bool, got {raw_value!r}."
        )

    if not normalized:
        raise ValueError(
            f"Invalid environment override '{env_name}': expected non-empty string."
        )
    return normalized


def _default_values() -> dict[str, object]:
    defaults = ProcpilotConfig()
    return {field.name: getattr(defaults, field.name) for field in fields(ProcpilotConfig)}


def _apply_toml_payload(
    *,
    values: dict[str, object],
    payload: dict[str, object],
    path: Path,
) -> None:
    for key, raw_value in payload.items():
        section_map = _SECTION_KEY_MAP.get(key)
        if section_map is not None:
            if not isinstance(raw_value, dict):
                raise ValueError(f"Invalid value for '{key}' in '{path}': expected table.")
            for section_key, section_value in cast("dict[str, object]", raw_value).items():
                field_name = section_map.get(section_key)
                if field_name is None:
                    logger.warning(
                        "Ignoring unknown procpilot config key '%s.%s'.",
                        key,
                        section_key,
                    )
                    continue
                values[field_name] = _coerce_file_value(
                    field_name=field_name,
                    raw_value=section_value,
                    source=f"{key}.{section_key}",
                )
            continue

        field_name = _TOP_LEVEL_KEY_MAP.get(key)
        if field_name is None:
            logger.warning("Ignoring unknown procpilot config key '%s'.", key)
            continue
        values[field_name] = _coerce_file_value(
            field_name=field_name,
            raw_value=raw_value,
            source=key,
        )


def _apply_env_overrides(values: dict[str, object]) -> None:
    for env_name, field_name in _ENV_OVERRIDE_MAP.items():
        raw_value = os.getenv(env_name)
        if raw_value is None:
            continue
        values[field_name] = _coerce_env_value(
            field_name=field_name,
            raw_value=raw_value,
            env_name=env_name,
        )


def _build_config(values: dict[str, object]) -> ProcpilotConfig:
    config = ProcpilotConfig(
        fork_retries=cast("int", values["fork_retries"]),
        restart_exit_code=cast("int", values["restart_exit_code"]),
        fork_backoff_seconds=cast("float", values["fork_backoff_seconds"]),
        kill_grace_seconds=cast("float", values["kill_grace_seconds"]),
        exit_code_grace_seconds=cast("float", values["exit_code_grace_seconds"]),
        wait_timeout_seconds=cast("float", values["wait_timeout_seconds"]),
        log_dir=cast("str", values["log_dir"]),
        join_streams=cast("bool", values["join_streams"]),
        shell=cast("bool", values["shell"]),
    )
    if not _FORK_RETRIES_MIN <= config.fork_retries <= _FORK_RETRIES_MAX:
        raise ValueError(
            f"Invalid fork_retries: expected int between {_FORK_RETRIES_MIN} and "
            f"{_FORK_RETRIES_MAX}, got {config.fork_retries!r}."
        )
    if config.fork_backoff_seconds < 0:
        raise ValueError("Invalid fork_backoff_seconds: expected a value >= 0.")
    return config


def load_config(root: Path) -> ProcpilotConfig:
    """Load `.procpilot/config.toml` under ``root`` and apply environment overrides."""

    values = _default_values()
    path = config_path(root)
    if path.is_file():
        payload_obj = tomllib.loads(path.read_text(encoding="utf-8"))
        payload = cast("dict[str, object]", payload_obj)
        _apply_toml_payload(values=values, payload=payload, path=path)

    _apply_env_overrides(values)
    return _build_config(values)
