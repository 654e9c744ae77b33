"""Read agentpipe.yaml, anchor its paths, merge overrides and validate."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from agentpipe.config.models import AgentPipeConfig

DEFAULT_CONFIG_NAME = "agentpipe.yaml"


class ConfigError(Exception):
    """User-facing configuration error."""


def find_config(path: Path | str | None = None) -> Path | None:
    """Return the config file to load, or None if there is none.

    An explicit *path* must exist. Without one, ``agentpipe.yaml`` in the
    current directory is used when present.
    """
    if path is not None:
        explicit = Path(path)
        if not explicit.is_file():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit
    candidate = Path.cwd() / DEFAULT_CONFIG_NAME
    return candidate if candidate.is_file() else None


def load_config(
    path: Path | str | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    required: bool = True,
) -> AgentPipeConfig:
    """Load a config file and return the validated configuration.

    Relative paths in the ``options`` and ``transport`` sections are taken
    relative to the config file's directory. ``system_prompt`` and
    ``append_system_prompt`` values starting with ``./`` or ``/`` are
    replaced by the contents of that file. A ``.env`` next to the config
    file is loaded into the process environment.

    *overrides* are option values (typically from command-line flags)
    applied on top of the file; ``None`` values are ignored. They are
    validated together with the file, so a bad override is reported the
    same way as a bad config entry.

    With ``required=False`` a missing default file is not an error and
    the built-in defaults are used instead.

    Raises:
        ConfigError: On a missing file, bad YAML or a validation failure.
    """
    config_path = find_config(path)
    if config_path is None:
        if required:
            raise ConfigError(f"No {DEFAULT_CONFIG_NAME} found in {Path.cwd()}.")
        raw: dict[str, Any] = {}
    else:
        raw = _read_document(config_path)
        base_dir = config_path.parent.resolve()
        _anchor_options(_section(raw, "options"), base_dir)
        _anchor_transport(_section(raw, "transport"), base_dir)
        env_file = base_dir / ".env"
        if env_file.is_file():
            load_dotenv(env_file)

    changes = {k: v for k, v in (overrides or {}).items() if v is not None}
    if changes:
        options = raw.setdefault("options", {})
        if not isinstance(options, dict):
            raise ConfigError("'options' must be a mapping")
        options.update(changes)

    try:
        return AgentPipeConfig.model_validate(raw)
    except ValidationError as exc:
        source = config_path.name if config_path is not None else "options"
        raise ConfigError(_describe(exc, source)) from exc


def _read_document(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc.strerror}") from exc
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}" if mark is not None else ""
        raise ConfigError(f"Invalid YAML in {path.name}{where}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name} must contain a YAML mapping, not a {type(data).__name__}")
    return data


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    """Return ``raw[name]`` when it is a mapping, else an empty dict.

    Malformed sections are left in place for validation to report.
    """
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _anchor(value: Any, base_dir: Path) -> Any:
    if not isinstance(value, str | Path):
        return value
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else base_dir / path)


def _anchor_options(options: dict[str, Any], base_dir: Path) -> None:
    for key in ("system_prompt", "append_system_prompt"):
        value = options.get(key)
        if isinstance(value, str) and value.startswith(("./", "/")):
            options[key] = _read_prompt_file(key, value, base_dir)

    if "cwd" in options:
        options["cwd"] = _anchor(options["cwd"], base_dir)
    if isinstance(options.get("add_dirs"), list):
        options["add_dirs"] = [_anchor(d, base_dir) for d in options["add_dirs"]]

    settings = options.get("settings")
    if isinstance(settings, str) and not settings.lstrip().startswith("{"):
        options["settings"] = _anchor(settings, base_dir)

    mcp = options.get("mcp_servers")
    if isinstance(mcp, str) and not mcp.lstrip().startswith("{"):
        options["mcp_servers"] = {"kind": "path", "path": _anchor(mcp, base_dir)}
    elif isinstance(mcp, dict) and mcp.get("kind") == "path":
        options["mcp_servers"] = {**mcp, "path": _anchor(mcp.get("path"), base_dir)}


def _anchor_transport(transport: dict[str, Any], base_dir: Path) -> None:
    # A bare executable name is looked up on PATH, so only paths are anchored.
    cli_path = transport.get("cli_path")
    if isinstance(cli_path, str) and ("/" in cli_path or cli_path.startswith("~")):
        transport["cli_path"] = _anchor(cli_path, base_dir)


def _read_prompt_file(key: str, value: str, base_dir: Path) -> str:
    prompt_path = (base_dir / value).resolve()
    if not prompt_path.is_relative_to(base_dir):
        raise ConfigError(f"'{key}' file escapes project directory: {value}")
    if not prompt_path.is_file():
        raise ConfigError(f"Prompt file not found for '{key}': {value}")
    return prompt_path.read_text(encoding="utf-8").strip()


def _describe(exc: ValidationError, source: str) -> str:
    lines = [f"Config validation failed ({source}):"]
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "<root>"
        lines.append(f"  {field}: {err['msg']}")
    return "\n".join(lines)
