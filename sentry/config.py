#!/usr/bin/env python3
"""
Unified configuration loader for Sentry.

Load order (first found wins):
  1) SENTRY_CONFIG (env, absolute or relative to CWD)
  2) /etc/sentry/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "camera": {
        "source": "wrappercamerabinsrc mode=2",
        "width": 320,
        "height": 240,
    },
    "capture": {
        # process | pipeline | auto
        "backend": "process",
        "executables": ["gst-launch", "gst-launch-1.0"],
        "host": "127.0.0.1",
        "port_timeout_sec": 5.0,
        "startup_grace_sec": 0.5,
        "stop_timeout_sec": 2.0,
    },
    "paths": {
        "storage_dir": "/apps/sentry/recordings",
        "recording_filename": "recording.ogv",
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError):
        # Ignore parse errors and continue with other locations/defaults
        pass
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SENTRY_CONFIG")
    if env_cfg:
        try:
            search.append(Path(env_cfg).expanduser().resolve())
        except OSError:
            search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/sentry/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "SENTRY_STORAGE_DIR" in os.environ:
        value = os.environ["SENTRY_STORAGE_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["storage_dir"] = value
    if "SENTRY_CAPTURE_BACKEND" in os.environ:
        value = os.environ["SENTRY_CAPTURE_BACKEND"].strip().lower()
        if value in {"process", "pipeline", "auto"}:
            cfg.setdefault("capture", {})["backend"] = value
    if "SENTRY_GST_EXECUTABLES" in os.environ:
        names = [
            token.strip()
            for token in os.environ["SENTRY_GST_EXECUTABLES"].split(",")
            if token.strip()
        ]
        if names:
            cfg.setdefault("capture", {})["executables"] = names

    env_map = {
        "SENTRY_PORT_TIMEOUT": ("capture", "port_timeout_sec", float),
        "SENTRY_LISTEN_HOST": ("web_server", "listen_host", str),
        "SENTRY_LISTEN_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # sentry/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)
