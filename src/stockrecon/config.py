from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import logging
import os
import sys

from stockrecon.domain.errors import ValidationError


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    logs_dir: Path
    store_timeout: float = 5.0
    cas_retries: int = 5
    rest_url: Optional[str] = None
    rest_key: Optional[str] = None
    log_level: int = logging.INFO


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "StockReconciliation") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "stock.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number. Received: {raw!r}") from exc
    if value <= 0:
        raise ValidationError(f"{name} must be > 0. Received: {raw!r}")
    return value


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer. Received: {raw!r}") from exc
    if value < 1:
        raise ValidationError(f"{name} must be >= 1. Received: {raw!r}")
    return value


def load_settings(environ: Mapping[str, str] | None = None, paths: AppPaths | None = None) -> Settings:
    env = os.environ if environ is None else environ
    paths = paths or get_app_paths()

    db_raw = (env.get("STOCKRECON_DB_PATH") or "").strip()
    level_name = (env.get("STOCKRECON_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValidationError(f"STOCKRECON_LOG_LEVEL is not a logging level. Received: {level_name!r}")

    return Settings(
        db_path=Path(db_raw) if db_raw else paths.db_path,
        logs_dir=paths.logs_dir,
        store_timeout=_float_env(env, "STOCKRECON_STORE_TIMEOUT", 5.0),
        cas_retries=_int_env(env, "STOCKRECON_CAS_RETRIES", 5),
        rest_url=(env.get("STOCKRECON_REST_URL") or "").strip() or None,
        rest_key=(env.get("STOCKRECON_REST_KEY") or "").strip() or None,
        log_level=level,
    )
