# context_auth/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Literal, Dict, Any

import yaml

log = logging.getLogger(__name__)


@dataclass
class Settings:
    # Cookie/session
    session_cookie_name: str
    session_samesite: Literal["lax", "strict", "none"]
    session_secret_key: Optional[str]
    dev_allow_insecure_cookie: bool
    # DB
    db_path: str
    # Confidentiality
    encryption_keys: Dict[str, str]   # key version -> urlsafe b64 AES-256 key
    active_key_version: str
    index_key: Optional[str]
    # Policy
    max_unverified_attempts: int
    # Geolocation
    geolocation_enabled: bool
    geolocation_url: str
    geolocation_timeout: float
    geolocation_cache_ttl: int
    # Audit
    audit_retention_seconds: int
    audit_sweep_interval_seconds: int
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None

    @property
    def https_only(self) -> bool:
        return not self.dev_allow_insecure_cookie


_DEFAULTS: Dict[str, Any] = {
    "db": {"path": "data/context-auth.db"},
    "session": {
        "cookie_name": "context_auth_session",
        "same_site": "lax",
        "secret_key": None,  # if None, app will generate an ephemeral key on startup (dev only)
        "dev_allow_insecure_cookie": True,
    },
    "crypto": {
        "keys": {},
        "active_key_version": "v1",
        "index_key": None,
    },
    "policy": {"max_unverified_attempts": 3},
    "geolocation": {
        "enabled": True,
        "url": "http://ip-api.com/json/{ip}?fields=status,message,country,countryCode,regionName,city",
        "timeout": 5,
        "cache_ttl": 300,
    },
    "audit": {"retention_seconds": 7 * 24 * 3600, "sweep_interval_seconds": 3600},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "context-auth.yaml",
    "context-auth.yml",
    "context-auth.dev.yaml",
)


def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _resolve_path(s: str, base_dir: Path) -> Optional[Path]:
    """
    Try multiple resolution strategies for a relative path:
    - as given relative to CWD
    - relative to the project root
    - relative to the parent of the project root
    Return first existing path; else None.
    """
    p = Path(s)
    if p.is_absolute():
        return p if p.exists() else None
    candidates = [
        Path.cwd() / p,
        base_dir / p,
        base_dir.parent / p,
        p,  # raw relative
    ]
    for c in candidates:
        if c.exists():
            return c
    return None


def _substitute_env_vars(obj):
    """Replace "${VAR_NAME}" strings with the environment value; unset variables become None."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        env_value = os.getenv(var_name)
        if env_value:
            return env_value
        log.warning("Environment variable %s not set, leaving value unset", var_name)
        return None
    return obj


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:

    Priority:
      1) explicit `path` arg (absolute or relative)
      2) env CONTEXT_AUTH_CONFIG (absolute or relative; robustly resolved)
      3) search order in project root: context-auth.yaml|yml|context-auth.dev.yaml
    """
    base_dir = Path(__file__).resolve().parent.parent.parent  # project root
    cfg_file_used: Optional[Path] = None

    if path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = _resolve_path(path, base_dir) or candidate
        if not candidate or not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        cfg_file_used = candidate
    else:
        env_cfg = os.getenv("CONTEXT_AUTH_CONFIG")
        if env_cfg:
            candidate = _resolve_path(env_cfg, base_dir)
            if not candidate:
                tried = [
                    str(Path(env_cfg)),
                    str(base_dir / env_cfg),
                    str(base_dir.parent / env_cfg),
                    str(Path.cwd() / env_cfg),
                ]
                raise FileNotFoundError(
                    "CONTEXT_AUTH_CONFIG not found. Tried: " + ", ".join(tried)
                )
            cfg_file_used = candidate
        else:
            for name in _SEARCH_ORDER:
                p = base_dir / name
                if p.exists():
                    cfg_file_used = p
                    break

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)
    crypto = cfg.get("crypto") or {}

    # Key material: environment wins over config for the active version
    active_version = str(crypto.get("active_key_version") or "v1")
    keys = {str(k): str(v) for k, v in (crypto.get("keys") or {}).items() if v}
    key_env = os.getenv("CONTEXT_AUTH_ENCRYPTION_KEY")
    if key_env:
        keys[active_version] = key_env.strip()
        log.info("Loaded field encryption key %s from CONTEXT_AUTH_ENCRYPTION_KEY", active_version)
    index_key = os.getenv("CONTEXT_AUTH_INDEX_KEY") or crypto.get("index_key")

    # Normalize db path
    db_path = (cfg.get("db") or {}).get("path") or "/tmp/context-auth.db"
    dbp = Path(db_path)
    if not dbp.is_absolute():
        # relative to the project root to ease local dev (e.g., data/context-auth.db)
        dbp = base_dir / dbp
    db_path = str(dbp)

    geo = cfg.get("geolocation") or {}
    audit = cfg.get("audit") or {}

    s = Settings(
        session_cookie_name=(cfg.get("session") or {}).get("cookie_name") or "context_auth_session",
        session_samesite=((cfg.get("session") or {}).get("same_site") or "lax").lower(),  # type: ignore
        session_secret_key=(cfg.get("session") or {}).get("secret_key"),
        dev_allow_insecure_cookie=bool((cfg.get("session") or {}).get("dev_allow_insecure_cookie", False)),
        db_path=db_path,
        encryption_keys=keys,
        active_key_version=active_version,
        index_key=index_key,
        max_unverified_attempts=int((cfg.get("policy") or {}).get("max_unverified_attempts", 3)),
        geolocation_enabled=bool(geo.get("enabled", True)),
        geolocation_url=str(geo.get("url") or _DEFAULTS["geolocation"]["url"]),
        geolocation_timeout=float(geo.get("timeout", 5)),
        geolocation_cache_ttl=int(geo.get("cache_ttl", 300)),
        audit_retention_seconds=int(audit.get("retention_seconds", 7 * 24 * 3600)),
        audit_sweep_interval_seconds=int(audit.get("sweep_interval_seconds", 3600)),
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
    if s.max_unverified_attempts < 1:
        raise ValueError("policy.max_unverified_attempts must be at least 1")
    return s
