# studyrules/core/config.py
from __future__ import annotations

from datetime import tzinfo
from pathlib import Path
from typing import Any, Dict, List
from zoneinfo import ZoneInfo

import yaml
from pydantic import Field, PrivateAttr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from studyrules.core.validate_cfg import validate_cfg
from studyrules.engine.engine import ErrorPolicy
from studyrules.engine.external import ExternalService


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STUDY_ENGINE_")

    # main YAML (STUDY_ENGINE_CONFIG_FILE)
    config_file: str = Field(default="config.yaml")

    log_level: str = "INFO"
    timezone: str = "UTC"
    max_eval_depth: int = 64
    rule_error_policy: ErrorPolicy = ErrorPolicy.CONTINUE

    # loaded YAML
    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Path | None = PrivateAttr(default=None)

    @field_validator("rule_error_policy", mode="before")
    @classmethod
    def _policy_case(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    # ───────── paths ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    # ───────── YAML cfg ─────────
    @property
    def cfg(self) -> Dict[str, Any]:
        return self._cfg

    def set_cfg(self, data: Dict[str, Any]) -> None:
        data = data or {}
        validate_cfg(data)
        self._cfg = data
        self._apply_engine_section()

    def load_yaml_config(self) -> None:
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                self.set_cfg(yaml.safe_load(f) or {})  # raises ValueError on bad config
        else:
            self._cfg = {}

    def _apply_engine_section(self) -> None:
        engine = self._cfg.get("engine") or {}
        if "timezone" in engine:
            self.timezone = str(engine["timezone"])
        if "max_eval_depth" in engine:
            self.max_eval_depth = int(engine["max_eval_depth"])
        if "rule_error_policy" in engine:
            self.rule_error_policy = ErrorPolicy(str(engine["rule_error_policy"]).strip().lower())

    # ───────── sections ─────────
    @property
    def engine(self) -> Dict[str, Any]:
        return self._cfg.get("engine", {}) or {}

    @property
    def external_services(self) -> List[ExternalService]:
        return [
            ExternalService.model_validate(s)
            for s in (self._cfg.get("external_services") or [])
        ]

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)
