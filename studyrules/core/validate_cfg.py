# studyrules/core/validate_cfg.py
from __future__ import annotations
from typing import Dict, Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ALLOWED_ERROR_POLICIES = {"continue", "abort"}


def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    if isinstance(v, bool):
        raise ValueError(f"{name}: integer expected, got {v!r}")
    try:
        iv = int(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: integer expected, got {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: must be <= {max_} (got {iv})")
    return iv


def _as_str(v, name, *, required: bool = True) -> str:
    if v is None:
        v = ""
    if not isinstance(v, str):
        raise ValueError(f"{name}: string expected, got {v!r}")
    if required and not v.strip():
        raise ValueError(f"{name}: must not be empty")
    return v


def _as_timezone(v, name) -> str:
    tz = _as_str(v, name)
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"{name}: unknown timezone {tz!r}")
    return tz


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Raises ValueError with a readable path if the config is invalid."""
    if not isinstance(cfg, dict):
        raise ValueError("root YAML must be an object")

    # ─── engine ───
    engine = cfg.get("engine", {}) or {}
    if not isinstance(engine, dict):
        raise ValueError("engine: must be an object")
    if "timezone" in engine:
        _as_timezone(engine["timezone"], "engine.timezone")
    if "max_eval_depth" in engine:
        _as_int(engine["max_eval_depth"], "engine.max_eval_depth", 1, 10000)
    if "rule_error_policy" in engine:
        pol = _as_str(engine["rule_error_policy"], "engine.rule_error_policy").strip().lower()
        if pol not in ALLOWED_ERROR_POLICIES:
            raise ValueError(
                f"engine.rule_error_policy: must be one of {sorted(ALLOWED_ERROR_POLICIES)}"
            )

    # ─── external_services ───
    services = cfg.get("external_services", []) or []
    if not isinstance(services, list):
        raise ValueError("external_services: must be a list")

    seen = set()
    for i, svc in enumerate(services):
        path = f"external_services[{i}]"
        if not isinstance(svc, dict):
            raise ValueError(f"{path}: must be an object")

        name = _as_str(svc.get("name"), f"{path}.name").strip()
        if name in seen:
            raise ValueError(f"{path}.name: duplicate service name {name!r}")
        seen.add(name)

        url = _as_str(svc.get("url"), f"{path}.url").strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"{path}.url: must start with http:// or https://")

        if "apiKey" in svc:
            _as_str(svc["apiKey"], f"{path}.apiKey", required=False)
        if "timeout" in svc:
            _as_int(svc["timeout"], f"{path}.timeout", 1, 3600)

        mtls = svc.get("mTLSConfig")
        if mtls is not None:
            if not isinstance(mtls, dict):
                raise ValueError(f"{path}.mTLSConfig: must be an object")
            _as_str(mtls.get("certFile"), f"{path}.mTLSConfig.certFile")
            _as_str(mtls.get("keyFile"), f"{path}.mTLSConfig.keyFile")
            if "caFile" in mtls:
                _as_str(mtls["caFile"], f"{path}.mTLSConfig.caFile", required=False)
