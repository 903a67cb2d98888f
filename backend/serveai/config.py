from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".shimmyserve"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (("log_dir", Path("logs")),)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "exec_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{SHIMMYSERVE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    This class is the single source of truth for config options:
    - what each option controls,
    - where it comes from (`SHIMMYSERVE_*`),
    - and what its default is.
    """

    model_config = SettingsConfigDict(
        env_prefix="SHIMMYSERVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for logs and other local state.",
    )

    # HTTP server.
    host: str = Field(
        default="127.0.0.1",
        description="Interface the `shimmyserve` command binds to.",
    )
    port: int = Field(
        default=3001,
        ge=1,
        le=65535,
        description="TCP port the `shimmyserve` command listens on.",
    )

    # External tools.
    shimmy_binary_path: str = Field(
        default="shimmy",
        description="Path (or PATH-resolvable name) of the inference server binary.",
    )
    docker_binary: str = Field(
        default="docker",
        description="Container engine CLI.",
    )
    kubectl_binary: str = Field(
        default="kubectl",
        description="Cluster control plane CLI. Kubeconfig setup is external.",
    )

    # Command execution guardrails.
    command_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Default timeout applied to every external command.",
    )
    cluster_probe_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the cluster reachability probe (`kubectl cluster-info`).",
    )
    max_output_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Per-stream cap on captured stdout/stderr; larger output fails the call.",
    )
    availability_ttl_seconds: float | None = Field(
        default=None,
        description=(
            "Re-probe tool availability after this many seconds. "
            "Unset keeps the first probe result for the process lifetime."
        ),
    )

    # Inference server lifecycle.
    settle_poll_interval_seconds: float = Field(
        default=0.25,
        ge=0,
        description="Polling cadence while waiting for shimmy to start or stop.",
    )
    settle_timeout_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Maximum wait for shimmy to reach the requested state.",
    )
    restart_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Pause between the stop and start halves of a restart.",
    )

    # Access control for mutating and administrative routes.
    admin_api_token: str | None = Field(
        default=None,
        description=(
            "Bearer token required by mutating routes. "
            "When unset, mutating routes are disabled."
        ),
    )
    exec_enabled: bool = Field(
        default=False,
        description="Enable raw command execution routes (shimmy execute, docker/kubectl exec).",
    )
    operations_rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Rate-limit window size in seconds for mutating routes.",
    )
    operations_rate_limit_max_requests: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Maximum mutating requests allowed per client in each window.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SHIMMYSERVE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("SHIMMYSERVE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("shimmy_binary_path", "docker_binary", "kubectl_binary", mode="before")
    @classmethod
    def _normalize_binary(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"SHIMMYSERVE_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        if normalized.startswith("~"):
            return str(Path(normalized).expanduser())
        return normalized

    @field_validator("availability_ttl_seconds", mode="before")
    @classmethod
    def _normalize_ttl(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("admin_api_token", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
