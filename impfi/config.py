from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class ScanCfg(BaseModel):
    recursive: bool = False


class ParserCfg(BaseModel):
    # auto, i386, amd64, ia64, arm64
    target_machine: str = "auto"
    thunk_termination: Literal["documented", "hint_sentinel"] = "documented"
    name_buffer_size: int = Field(default=32, ge=2)


class Limits(BaseModel):
    max_file_size_bytes: int = 200_000_000
    max_descriptors: int = 4096
    max_symbols_per_module: int = 65536


class LoggingCfg(BaseModel):
    level: str = "WARNING"


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    scan: ScanCfg = ScanCfg()
    parser: ParserCfg = ParserCfg()
    limits: Limits = Limits()
    logging: LoggingCfg = LoggingCfg()


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return AppConfig.model_validate(data)


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()
