"""Configuration loading from environment variables and memkeep.toml."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from memkeep.search.similarity import LSHOptions
from memkeep.types import Scope, parse_scope

logger = logging.getLogger(__name__)

_DEFAULT_HOME = Path.home() / ".memkeep"
_DEFAULT_GLOBAL_DIR = _DEFAULT_HOME / "memory"
_CONFIG_FILENAME = "memkeep.toml"


@dataclass
class ScopeConfig:
    """Which scopes are available and where the enterprise root lives."""

    default: Scope | None = None
    enterprise_enabled: bool = False
    enterprise_path: Path | None = None


@dataclass
class SimilarityConfig:
    """Thresholds and LSH tuning for duplicate detection."""

    lsh_threshold: int = 200
    hash_bits: int = 10
    num_tables: int = 6
    seed: int = 42
    duplicate_threshold: float = 0.92

    def lsh_options(self) -> LSHOptions:
        return LSHOptions(self.lsh_threshold, self.hash_bits, self.num_tables, self.seed)


@dataclass
class EmbeddingConfig:
    max_chars: int = 6000


@dataclass
class MemkeepConfig:
    """Top-level memkeep configuration."""

    scopes: ScopeConfig = field(default_factory=ScopeConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    global_dir: Path = _DEFAULT_GLOBAL_DIR
    lock_timeout: float = 10.0
    log_level: str = "INFO"


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _default_scope(raw: str | None) -> Scope | None:
    if not raw:
        return None
    scope = parse_scope(raw)
    if scope is None:
        logger.warning("Ignoring unknown default scope %r", raw)
    return scope


def load_config(config_path: Path | None = None) -> MemkeepConfig:
    """Load configuration from environment variables and optional memkeep.toml.

    Priority: environment variables > memkeep.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memkeep/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    scopes_data = file_data.get("scopes", {})
    similarity_data = file_data.get("similarity", {})
    embedding_data = file_data.get("embedding", {})

    enterprise_path = os.getenv("MEMKEEP_ENTERPRISE_PATH", scopes_data.get("enterprise_path"))

    config = MemkeepConfig(
        scopes=ScopeConfig(
            default=_default_scope(
                os.getenv("MEMKEEP_DEFAULT_SCOPE", scopes_data.get("default"))
            ),
            enterprise_enabled=_as_bool(
                os.getenv(
                    "MEMKEEP_ENTERPRISE_ENABLED", scopes_data.get("enterprise_enabled", False)
                )
            ),
            enterprise_path=Path(enterprise_path).expanduser() if enterprise_path else None,
        ),
        similarity=SimilarityConfig(
            lsh_threshold=int(similarity_data.get("lsh_threshold", 200)),
            hash_bits=int(similarity_data.get("hash_bits", 10)),
            num_tables=int(similarity_data.get("num_tables", 6)),
            seed=int(similarity_data.get("seed", 42)),
            duplicate_threshold=float(similarity_data.get("duplicate_threshold", 0.92)),
        ),
        embedding=EmbeddingConfig(
            max_chars=int(embedding_data.get("max_chars", 6000)),
        ),
        global_dir=Path(
            os.getenv("MEMKEEP_GLOBAL_DIR", file_data.get("global_dir", str(_DEFAULT_GLOBAL_DIR)))
        ).expanduser(),
        lock_timeout=float(os.getenv("MEMKEEP_LOCK_TIMEOUT", file_data.get("lock_timeout", 10.0))),
        log_level=os.getenv("MEMKEEP_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
