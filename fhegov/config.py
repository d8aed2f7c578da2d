# fhegov/config.py
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

# -------------------------
# Pydantic models (typed)
# -------------------------


class LedgerConf(BaseModel):
    driver: Literal["memory", "json", "http"] = "memory"
    json_path: str = "fhegov_ledger.json"  # used only when driver == "json"
    http_url: str = "http://127.0.0.1:5000"  # used only when driver == "http"
    http_timeout: float = 5.0


class CodecConf(BaseModel):
    backend: Literal["envelope", "fernet"] = "envelope"
    fernet_key: Optional[str] = None  # if None, an ephemeral key is generated


class SessionConf(BaseModel):
    chain_id: int = 0
    contract_address: str = "0x0000000000000000000000000000000000000000"
    duration_days: int = Field(default=30, ge=1)


class LoggingConf(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_lines: bool = False


class ServerConf(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5000
    debug: bool = False
    max_sessions: int = Field(default=1024, ge=1)


class Settings(BaseModel):
    ledger: LedgerConf = LedgerConf()
    codec: CodecConf = CodecConf()
    session: SessionConf = SessionConf()
    logging: LoggingConf = LoggingConf()
    server: ServerConf = ServerConf()


# -------------------------
# Loading
# -------------------------

# env var -> (section, field)
_ENV_OVERRIDES = {
    "FHEGOV_LEDGER_DRIVER": ("ledger", "driver"),
    "FHEGOV_LEDGER_PATH": ("ledger", "json_path"),
    "FHEGOV_LEDGER_URL": ("ledger", "http_url"),
    "FHEGOV_CODEC": ("codec", "backend"),
    "FHEGOV_FERNET_KEY": ("codec", "fernet_key"),
    "FHEGOV_CHAIN_ID": ("session", "chain_id"),
    "FHEGOV_CONTRACT_ADDRESS": ("session", "contract_address"),
    "FHEGOV_DURATION_DAYS": ("session", "duration_days"),
    "FHEGOV_LOG_LEVEL": ("logging", "level"),
    "FHEGOV_HOST": ("server", "host"),
    "FHEGOV_PORT": ("server", "port"),
}


def _read_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"config file not found: {p}")
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {p} must contain a mapping")
    return data


def build_settings(
    config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None
) -> Settings:
    """Merge YAML file values and FHEGOV_* environment overrides."""
    env = os.environ if environ is None else environ
    raw = _read_yaml(config_path or env.get("FHEGOV_CONFIG"))
    for var, (section, field) in _ENV_OVERRIDES.items():
        if var in env:
            raw.setdefault(section, {})[field] = env[var]
    return Settings.model_validate(raw)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return build_settings()
