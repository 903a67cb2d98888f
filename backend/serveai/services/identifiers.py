from __future__ import annotations

import re
import shlex
from typing import Any

_CONTAINER_REF = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,254}$")
_IMAGE_REF = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/:@-]{0,254}$")
# DNS-1123 subdomain (pods, deployments, services, nodes).
_RESOURCE_NAME = re.compile(r"^[a-z0-9]([-a-z0-9.]{0,251}[a-z0-9])?$")
# DNS-1123 label.
_NAMESPACE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
_RESOURCE_KIND = re.compile(r"^[A-Za-z][A-Za-z0-9.-]{0,62}$")
_MODEL_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/-]{0,254}$")
_SUBCOMMAND = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")
_MAX_COMMAND_LENGTH = 4096


class InvalidArgumentError(ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


def _validate(pattern: re.Pattern[str], field: str, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidArgumentError(field, "must be a string")
    if not pattern.fullmatch(value):
        raise InvalidArgumentError(field, f"invalid value {value[:64]!r}")
    return value


def validate_container_ref(value: Any) -> str:
    return _validate(_CONTAINER_REF, "container", value)


def validate_image_ref(value: Any) -> str:
    return _validate(_IMAGE_REF, "image", value)


def validate_resource_name(value: Any, *, field: str = "name") -> str:
    return _validate(_RESOURCE_NAME, field, value)


def validate_namespace(value: Any) -> str:
    return _validate(_NAMESPACE, "namespace", value)


def validate_resource_kind(value: Any) -> str:
    return _validate(_RESOURCE_KIND, "kind", value)


def validate_model_name(value: Any) -> str:
    return _validate(_MODEL_NAME, "model", value)


def validate_subcommand(value: Any) -> str:
    return _validate(_SUBCOMMAND, "command", value)


def validate_replicas(value: Any) -> int:
    # bool is an int subclass; True replicas is never meant.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError("replicas", "must be an integer")
    if value < 0:
        raise InvalidArgumentError("replicas", "must not be negative")
    return value


def validate_line_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError("lines", "must be an integer")
    if value < 1 or value > 10_000:
        raise InvalidArgumentError("lines", "must be between 1 and 10000")
    return value


def split_command(command: Any) -> list[str]:
    """Split an operator-supplied command line into an argument vector."""
    if not isinstance(command, str):
        raise InvalidArgumentError("command", "must be a string")
    if len(command) > _MAX_COMMAND_LENGTH:
        raise InvalidArgumentError("command", "is too long")
    if "\x00" in command:
        raise InvalidArgumentError("command", "must not contain NUL bytes")
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise InvalidArgumentError("command", str(exc)) from exc
    if not argv:
        raise InvalidArgumentError("command", "must not be empty")
    return argv


def validate_arguments(args: Any) -> list[str]:
    if not isinstance(args, list | tuple):
        raise InvalidArgumentError("args", "must be a list of strings")
    validated: list[str] = []
    for arg in args:
        if not isinstance(arg, str) or "\x00" in arg:
            raise InvalidArgumentError("args", "must be a list of strings")
        validated.append(arg)
    return validated
