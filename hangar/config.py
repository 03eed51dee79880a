"""TOML-based cloud and template configuration.

Loads ~/.hangar/defaults.toml (global) and hangar.toml (project), merges
them, and builds ``CloudConfig`` values from the ``[clouds.<name>]`` tables.

Example ``hangar.toml``::

    [clouds.prod]
    region = "eu-west-1"
    instance_cap = 20
    private_key_file = "~/.ssh/ci-agents.pem"

    [clouds.prod.timeouts]
    boot = 240

    [[clouds.prod.templates]]
    ami = "ami-0abc"
    instance_type = "t3.large"
    labels = "linux docker"
    subnets = ["subnet-1", "subnet-2"]
    tags = { team = "ci" }
"""

from __future__ import annotations

import tomllib
from dataclasses import fields
from pathlib import Path
from typing import Any

from hangar.core.exceptions import ConfigurationError
from hangar.model import (
    BlockDevice,
    CloudConfig,
    ConnectionStrategy,
    Credentials,
    HostKeyPolicy,
    SpotConfig,
    Template,
    Timeouts,
    UsageMode,
)

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".hangar" / "defaults.toml"
PROJECT_CONFIG_NAME = "hangar.toml"

_CREDENTIAL_KEYS = frozenset(f.name for f in fields(Credentials))
_TUPLE_FIELDS = frozenset({"subnets", "security_groups"})


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("clouds", {})
    return merged


def _enum[E](cls: type[E], value: Any, where: str) -> E:
    try:
        return cls(str(value).upper())  # type: ignore[call-arg]
    except ValueError as e:
        valid = ", ".join(m.value for m in cls)  # type: ignore[attr-defined]
        raise ConfigurationError(f"{where}: invalid value '{value}'. Valid: {valid}") from e


def _construct[T](cls: type[T], raw: RawConfig, where: str) -> T:
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigurationError(f"{where}: {e}") from e


def _build_template(raw: RawConfig, where: str) -> Template:
    raw = dict(raw)
    for key in _TUPLE_FIELDS & raw.keys():
        value = raw[key]
        raw[key] = tuple(value.split()) if isinstance(value, str) else tuple(value)
    if "tags" in raw:
        raw["tags"] = tuple((str(k), str(v)) for k, v in dict(raw["tags"]).items())
    if "mode" in raw:
        raw["mode"] = _enum(UsageMode, raw["mode"], f"{where}.mode")
    if "connection_strategy" in raw:
        raw["connection_strategy"] = _enum(
            ConnectionStrategy, raw["connection_strategy"], f"{where}.connection_strategy",
        )
    if "host_key_policy" in raw:
        raw["host_key_policy"] = _enum(HostKeyPolicy, raw["host_key_policy"], f"{where}.host_key_policy")
    if "spot" in raw:
        spot = raw["spot"]
        raw["spot"] = _construct(SpotConfig, spot if isinstance(spot, dict) else {}, f"{where}.spot")
    if "block_devices" in raw:
        raw["block_devices"] = tuple(
            _construct(BlockDevice, d, f"{where}.block_devices[{i}]")
            for i, d in enumerate(raw["block_devices"])
        )
    return _construct(Template, raw, where)


def _read_private_key(raw: RawConfig, where: str) -> str:
    if "private_key" in raw:
        return str(raw.pop("private_key"))
    path_value = raw.pop("private_key_file", None)
    if path_value is None:
        return ""
    path = Path(str(path_value)).expanduser()
    try:
        return path.read_text()
    except OSError as e:
        raise ConfigurationError(f"{where}: cannot read private key file {path}: {e}") from e


def build_cloud(name: str, raw: RawConfig) -> CloudConfig:
    where = f"clouds.{name}"
    raw = dict(raw)
    private_key = _read_private_key(raw, where)
    credentials = Credentials(**{k: raw.pop(k) for k in list(raw) if k in _CREDENTIAL_KEYS})
    timeouts = _construct(Timeouts, raw.pop("timeouts", {}), f"{where}.timeouts")
    templates = tuple(
        _build_template(t, f"{where}.templates[{i}]")
        for i, t in enumerate(raw.pop("templates", []))
    )

    ids = [t.id for t in templates]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigurationError(f"{where}: duplicate template ids {duplicates}")

    return _construct(
        CloudConfig,
        {
            **raw,
            "name": raw.get("name", name),
            "credentials": credentials,
            "timeouts": timeouts,
            "templates": templates,
            "private_key": private_key,
        },
        where,
    )


def build_clouds(config: RawConfig) -> list[CloudConfig]:
    clouds = [build_cloud(name, raw) for name, raw in config.get("clouds", {}).items()]
    names = [c.name for c in clouds]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate cloud names {duplicates}")
    return clouds


def resolve_clouds(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> list[CloudConfig]:
    return build_clouds(load_config(project_dir=project_dir, global_path=global_path))
