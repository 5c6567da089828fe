# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
keg configuration - single source of truth.

Priority (highest to lowest):
1. Environment variables (KEG_PREFIX, KEG_CACHE_DIR, KEG_LOG_LEVEL)
2. YAML config file (KEG_CONFIG or ~/.config/keg/config.yaml)
3. Default values
"""

import os
import platform
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Tuple

from keg.core.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "~/.config/keg/config.yaml"
RELAXATION_POLICIES = ("drop", "warn", "strict")


def detect_platform() -> str:
    """Platform tag used to pick binary artifacts, e.g. ``linux-x86_64``."""
    system = platform.system().lower()
    machine = platform.machine().lower()
    if machine in ("amd64", "x64"):
        machine = "x86_64"
    elif machine == "arm64":
        machine = "aarch64"
    return f"{system}-{machine}"


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Immutable engine configuration.
    """

    # -- Paths --
    prefix: Path = Path("/usr/local")
    cache_dir: Path = Path("~/.cache/keg").expanduser()
    link_dirs: Tuple[str, ...] = ("bin", "lib", "include", "share")
    formula_index: Optional[Path] = None

    # -- Platform --
    platform: str = field(default_factory=detect_platform)
    build_from_source: bool = False

    # -- Cache --
    cache_budget_bytes: int = 10 * 1024 * 1024 * 1024
    metadata_ttl: int = 3600

    # -- Resolver --
    relaxation_policy: str = "warn"
    include_optional: bool = False
    include_recommended: bool = True
    max_backtracks: int = 100

    # -- Installer --
    max_workers: int = 4
    lock_timeout: Optional[float] = None

    # -- Download --
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_retry_delay: float = 30.0
    http_timeout: float = 300.0
    user_agent: str = "keg/1.0"

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[Path] = None

    def __post_init__(self):
        if self.relaxation_policy not in RELAXATION_POLICIES:
            raise ConfigurationError(
                f"Unknown relaxation_policy {self.relaxation_policy!r}; "
                f"expected one of {', '.join(RELAXATION_POLICIES)}"
            )
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.cache_budget_bytes < 0:
            raise ConfigurationError("cache_budget_bytes must not be negative")

    # -- Derived paths --
    @property
    def cellar_dir(self) -> Path:
        return self.prefix / "Cellar"

    @property
    def state_dir(self) -> Path:
        return self.prefix / "var" / "keg"

    @property
    def receipts_dir(self) -> Path:
        return self.state_dir / "receipts"

    @property
    def staging_dir(self) -> Path:
        """Lives under the prefix so staged kegs can be renamed into place."""
        return self.state_dir / "staging"

    @property
    def downloads_dir(self) -> Path:
        return self.cache_dir / "downloads"

    @property
    def formula_index_file(self) -> Path:
        return self.formula_index or self.state_dir / "formula-index.json"

    @property
    def transactions_log(self) -> Path:
        return self.state_dir / "transactions.jsonl"


# =============================================================================
# LOADER
# =============================================================================

def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML.
    Returns defaults (plus environment overrides) if the file doesn't exist.

    Raises:
        ConfigurationError: If the file exists but is not valid YAML
    """
    path = path or os.getenv("KEG_CONFIG", DEFAULT_CONFIG_PATH)
    config_file = Path(path).expanduser()

    y: dict = {}
    if config_file.exists():
        try:
            with open(config_file) as f:
                y = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_file}: {e}", config_file=str(config_file))
        if not isinstance(y, dict):
            raise ConfigurationError(f"Config root must be a mapping: {config_file}", config_file=str(config_file))

    # Helper to safely navigate nested dicts
    def get(d: dict, *keys, default=None) -> Any:
        for k in keys:
            if not isinstance(d, dict):
                return default
            d = d.get(k, {})
        return default if d is None or d == {} else d

    defaults = Config()

    prefix = os.getenv("KEG_PREFIX") or get(y, "paths", "prefix") or defaults.prefix
    cache_dir = os.getenv("KEG_CACHE_DIR") or get(y, "paths", "cache") or defaults.cache_dir
    log_file = get(y, "logging", "file")
    formula_index = get(y, "paths", "formula_index")

    return Config(
        # Paths
        prefix=Path(prefix).expanduser(),
        cache_dir=Path(cache_dir).expanduser(),
        link_dirs=tuple(get(y, "paths", "link_dirs") or defaults.link_dirs),
        formula_index=Path(formula_index).expanduser() if formula_index else None,

        # Platform
        platform=get(y, "platform", "tag") or defaults.platform,
        build_from_source=bool(get(y, "platform", "build_from_source", default=False)),

        # Cache
        cache_budget_bytes=int(get(y, "cache", "budget_bytes", default=defaults.cache_budget_bytes)),
        metadata_ttl=int(get(y, "cache", "metadata_ttl", default=defaults.metadata_ttl)),

        # Resolver
        relaxation_policy=get(y, "resolver", "relaxation_policy") or defaults.relaxation_policy,
        include_optional=bool(get(y, "resolver", "include_optional", default=False)),
        include_recommended=bool(get(y, "resolver", "include_recommended", default=True)),
        max_backtracks=int(get(y, "resolver", "max_backtracks", default=defaults.max_backtracks)),

        # Installer
        max_workers=int(get(y, "installer", "max_workers", default=defaults.max_workers)),
        lock_timeout=get(y, "installer", "lock_timeout"),

        # Download
        max_retries=int(get(y, "download", "max_retries", default=defaults.max_retries)),
        retry_delay=float(get(y, "download", "retry_delay", default=defaults.retry_delay)),
        backoff_multiplier=float(get(y, "download", "backoff_multiplier", default=defaults.backoff_multiplier)),
        max_retry_delay=float(get(y, "download", "max_retry_delay", default=defaults.max_retry_delay)),
        http_timeout=float(get(y, "download", "timeout", default=defaults.http_timeout)),
        user_agent=get(y, "download", "user_agent") or defaults.user_agent,

        # Logging
        log_level=os.getenv("KEG_LOG_LEVEL") or get(y, "logging", "level") or defaults.log_level,
        log_format=get(y, "logging", "format") or defaults.log_format,
        log_file=Path(log_file).expanduser() if log_file else None,
    )
