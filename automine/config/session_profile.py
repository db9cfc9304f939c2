"""Load SessionConfig defaults from a YAML profile.

Optional file path via env `REFINORE_SESSION_PROFILE`, default `configs/session.yaml`.
Returns a flat dict of SessionConfig field -> value; a missing file yields {}.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from automine.config.config import session_env_overrides
from automine.config.session_config import SessionConfig

log = logging.getLogger("automine")


def load_session_profile(path: str | None = None) -> Dict[str, Any]:
    if path is None:
        path = os.getenv("REFINORE_SESSION_PROFILE", "configs/session.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ValueError(f"session profile {p} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"session profile {p} must be a mapping of session fields")
    session = data.get("session", data)
    if not isinstance(session, dict):
        raise ValueError(f"session profile {p}: 'session' must be a mapping")
    log.info(json.dumps({"event": "session_profile_loaded", "path": str(p), "fields": sorted(session)}))
    return dict(session)


def resolve_session_config(
    cli_overrides: Dict[str, Any] | None = None,
    profile_path: str | None = None,
    base: SessionConfig | None = None,
) -> SessionConfig:
    """
    Layer the session used by `run`: CLI flags > environment > YAML profile > defaults.

    Raises ConfigInvalid listing every problem found while layering.
    """
    cfg = base or SessionConfig()
    for layer in (load_session_profile(profile_path), session_env_overrides(), cli_overrides or {}):
        if layer:
            cfg = SessionConfig.from_mapping(layer, base=cfg)
    return cfg
