# budget/config.py
from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any, Dict, FrozenSet

import yaml
from pydantic import BaseModel, ConfigDict, field_validator


_log = logging.getLogger(__name__)

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# Cap at ~£20m so 32-bit arithmetic never wraps.
DEFAULT_MAX_BALANCE = 2_000_000_000
# Single transaction cap, ~£1m.
DEFAULT_SPEND_LIMIT = 100_000_000

CORRUPT_STATE_POLICIES: FrozenSet[str] = frozenset({"fatal", "quarantine"})


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Missing paths yield an empty mapping. A file that exists but does not
    parse, or whose top level is not a mapping, is a configuration error.
    """
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ---------------------------------------------------------

    app_name: str = "budget"
    version: str = "1.0.0"
    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- Listeners --------------------------------------------------------

    host: str = "0.0.0.0"
    http_port: int = 8910
    https_port: int = 8911
    cert_file: str = "cert.pem"
    key_file: str = "key.pem"

    # --- Files ------------------------------------------------------------

    data_file: str = "budget.dat"
    users_file: str = "users"
    log_dir: str = "/var/log/budget"
    transaction_log_name: str = "transactions.csv"
    unauthorized_log_name: str = "unauthorized.log"
    # fsync every audit line; the state file is always synced.
    audit_sync_on_write: bool = False

    # --- Ledger policy ----------------------------------------------------

    max_balance: int = DEFAULT_MAX_BALANCE
    spend_limit: int = DEFAULT_SPEND_LIMIT
    corrupt_state_policy: str = "fatal"

    # --- HTTP / observability ---------------------------------------------

    max_body_bytes: int = 64 * 1024
    log_level: str = "INFO"
    metrics_enable: bool = True

    @field_validator("http_port", "https_port")
    @classmethod
    def _port_range(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError("port out of range")
        return v

    @field_validator("max_balance")
    @classmethod
    def _max_balance_range(cls, v: int) -> int:
        if not 0 < v <= INT32_MAX:
            raise ValueError("max_balance must fit in a positive int32")
        return v

    @field_validator("spend_limit")
    @classmethod
    def _spend_limit_range(cls, v: int) -> int:
        if not 0 < v <= INT32_MAX:
            raise ValueError("spend_limit must fit in a positive int32")
        return v

    @field_validator("corrupt_state_policy")
    @classmethod
    def _policy_known(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in CORRUPT_STATE_POLICIES:
            raise ValueError(f"corrupt_state_policy must be one of {sorted(CORRUPT_STATE_POLICIES)}")
        return v

    @field_validator("max_body_bytes")
    @classmethod
    def _body_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_body_bytes must be positive")
        return v

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def transaction_log_path(self) -> str:
        return os.path.join(self.log_dir, self.transaction_log_name)

    @property
    def unauthorized_log_path(self) -> str:
        return os.path.join(self.log_dir, self.unauthorized_log_name)

    def tls_available(self) -> bool:
        return os.path.exists(self.cert_file) and os.path.exists(self.key_file)

    def config_hash(self) -> str:
        """
        Stable digest of the current settings, safe to expose on /healthz.
        Settings never hold secrets.
        """
        payload = json.dumps(
            self.model_dump(mode="json"),
            sort_keys=True,
            separators=(",", ":"),
        )
        h = hashlib.sha256()
        h.update(b"budget:settings")
        h.update(payload.encode("utf-8"))
        return h.hexdigest()[:16]


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by BUDGET_CONFIG_PATH.
      3. Environment variables (BUDGET_*).
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    yaml_path = os.environ.get("BUDGET_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        # extra="forbid" rejects unknown keys here
        merged = Settings(**tmp).model_dump()
        origin = "yaml"

    env_before = dict(merged)

    merged["host"] = _env_str("BUDGET_HOST", merged["host"])
    merged["http_port"] = _env_int("BUDGET_HTTP_PORT", merged["http_port"])
    merged["https_port"] = _env_int("BUDGET_HTTPS_PORT", merged["https_port"])
    merged["cert_file"] = _env_str("BUDGET_CERT_FILE", merged["cert_file"])
    merged["key_file"] = _env_str("BUDGET_KEY_FILE", merged["key_file"])

    merged["data_file"] = _env_str("BUDGET_DATA_FILE", merged["data_file"])
    merged["users_file"] = _env_str("BUDGET_USERS_FILE", merged["users_file"])
    merged["log_dir"] = _env_str("BUDGET_LOG_DIR", merged["log_dir"])
    merged["audit_sync_on_write"] = _env_bool(
        "BUDGET_AUDIT_SYNC_ON_WRITE", merged["audit_sync_on_write"]
    )

    # Caps, bounded to the int32 range; out-of-range values are ignored.
    max_balance = _env_int("BUDGET_MAX_BALANCE", merged["max_balance"])
    if 0 < max_balance <= INT32_MAX:
        merged["max_balance"] = max_balance
    spend_limit = _env_int("BUDGET_SPEND_LIMIT", merged["spend_limit"])
    if 0 < spend_limit <= INT32_MAX:
        merged["spend_limit"] = spend_limit

    merged["corrupt_state_policy"] = _env_str(
        "BUDGET_CORRUPT_STATE_POLICY", merged["corrupt_state_policy"]
    )

    body_env = _env_int("BUDGET_MAX_BODY_BYTES", merged["max_body_bytes"])
    if body_env > 0:
        merged["max_body_bytes"] = body_env
    merged["log_level"] = _env_str("BUDGET_LOG_LEVEL", merged["log_level"]).upper()
    merged["metrics_enable"] = _env_bool("BUDGET_METRICS_ENABLE", merged["metrics_enable"])

    if merged != env_before:
        origin = "env" if origin == "defaults" else origin + "+env"
    merged["config_origin"] = origin

    return Settings(**merged)
