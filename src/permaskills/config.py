from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ConfigurationError, ValidationError

DEFAULT_GATEWAY = "https://arweave.net"
DEFAULT_UPLOAD_URL = "https://upload.ardrive.io"
DEFAULT_CU_URL = "https://cu.ao-testnet.xyz"
DEFAULT_MU_URL = "https://mu.ao-testnet.xyz"
DEFAULT_TIMEOUT_S = 45.0
DEFAULT_FREE_TIER_THRESHOLD = 100 * 1024  # 100 KiB
DEFAULT_MAX_BUNDLE_SIZE = 10 * 1024 * 1024  # 10 MiB soft limit

LOCAL_CONFIG_FILENAME = ".skillsrc"


@dataclass(frozen=True)
class Config:
    registry: str | None = None  # registry process id
    gateway: str = DEFAULT_GATEWAY
    upload_url: str = DEFAULT_UPLOAD_URL
    cu_url: str = DEFAULT_CU_URL
    mu_url: str = DEFAULT_MU_URL
    wallet: str | None = None  # path to a JWK file
    timeout_s: float = DEFAULT_TIMEOUT_S
    free_tier_threshold: int = DEFAULT_FREE_TIER_THRESHOLD
    max_bundle_size: int = DEFAULT_MAX_BUNDLE_SIZE

    def require_registry(self) -> str:
        if not self.registry:
            raise ConfigurationError(
                "Registry process id is not configured.",
                key="registry",
                hint='Set AO_REGISTRY_PROCESS_ID or add "registry" to .skillsrc.',
            )
        return self.registry

    def require_wallet(self) -> str:
        if not self.wallet:
            raise ConfigurationError(
                "Wallet is not configured.",
                key="wallet",
                hint='Pass --wallet or add "wallet" to .skillsrc.',
            )
        return self.wallet


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLS_CONFIG_PATH"):
        return Path(env).expanduser()
    local = Path.cwd() / LOCAL_CONFIG_FILENAME
    if local.is_file():
        return local
    return user_config_path("permaskills") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    cfg = Config()
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(
                f"Configuration file {path.name} contains malformed JSON.",
                hint=f"Fix the JSON syntax in {path}.",
            ) from e
        if isinstance(raw, dict):
            allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
            filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
            cfg = Config(**filtered)  # type: ignore[arg-type]
    cfg = apply_env(cfg)
    validate_config(cfg)
    return cfg


def apply_env(cfg: Config) -> Config:
    overrides: dict[str, Any] = {}
    if env := os.getenv("AO_REGISTRY_PROCESS_ID"):
        overrides["registry"] = env.strip()
    if env := os.getenv("SKILLS_GATEWAY"):
        overrides["gateway"] = env.strip()
    if env := os.getenv("SKILLS_UPLOAD_URL"):
        overrides["upload_url"] = env.strip()
    if env := os.getenv("SKILLS_WALLET"):
        overrides["wallet"] = env.strip()
    if env := os.getenv("SKILLS_TIMEOUT_S"):
        try:
            overrides["timeout_s"] = float(env)
        except ValueError:
            pass
    return replace(cfg, **overrides) if overrides else cfg


def validate_gateway_url(url: str, *, field: str = "gateway") -> str:
    cleaned = url.strip().rstrip("/")
    if not cleaned.startswith("https://"):
        raise ValidationError(
            f"{field} must use HTTPS: {url!r}",
            hint=f"Use an HTTPS URL, for example {DEFAULT_GATEWAY}.",
        )
    return cleaned


def validate_config(cfg: Config) -> None:
    validate_gateway_url(cfg.gateway, field="gateway")
    validate_gateway_url(cfg.upload_url, field="upload_url")
    if cfg.free_tier_threshold < 0 or cfg.max_bundle_size <= 0:
        raise ValidationError("Size thresholds must be positive integers.")


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the wallet path is sensitive).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path
