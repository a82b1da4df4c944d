"""
Agent configuration, read once from the environment (.env via python-dotenv).

Only configuration errors are fatal: AgentConfig.validate() raises ConfigError
and main.py lets it abort startup.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .constitution import (
    ConstitutionViolation, HeartbeatCadence, TierThresholds,
)

logger = logging.getLogger("roly.config")


class ConfigError(Exception):
    """Missing identity or credentials, or invalid thresholds. Not retried."""
    pass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw.replace("_", ""))
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class IdentityConfig:
    agent_id: str
    public_key: str
    parent_id: Optional[str] = None
    generation: int = 1


@dataclass(frozen=True)
class SolanaConfig:
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    cluster: str = "mainnet-beta"
    usdc_mint: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    jupiter_api_url: str = "https://quote-api.jup.ag/v6"
    wallet_path: str = str(Path.home() / ".roly" / "wallet.key")

    @property
    def is_mainnet(self) -> bool:
        return self.cluster == "mainnet-beta"


@dataclass(frozen=True)
class LLMConfig:
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "anthropic/claude-3.5-sonnet"
    fallback_model: str = "openai/gpt-4o-mini"


@dataclass(frozen=True)
class SurvivalConfig:
    thresholds: TierThresholds = field(default_factory=TierThresholds)
    cadence: HeartbeatCadence = field(default_factory=HeartbeatCadence)


@dataclass(frozen=True)
class AgentConfig:
    identity: IdentityConfig
    solana: SolanaConfig = field(default_factory=SolanaConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    survival: SurvivalConfig = field(default_factory=SurvivalConfig)
    data_dir: str = "data"
    github_token: str = ""
    http_timeout_seconds: int = 15
    api_token: str = ""

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build config from environment variables. Does not validate."""
        critical_minutes = _env_int("HEARTBEAT_CRITICAL_MINUTES", 60)
        parent_id = os.getenv("AGENT_PARENT_ID", "") or None
        return cls(
            identity=IdentityConfig(
                agent_id=os.getenv("AGENT_ID", ""),
                public_key=os.getenv("AGENT_PUBLIC_KEY", ""),
                parent_id=parent_id,
                generation=_env_int("AGENT_GENERATION", 1),
            ),
            solana=SolanaConfig(
                rpc_url=os.getenv("SOLANA_RPC_URL", SolanaConfig.rpc_url),
                cluster=os.getenv("SOLANA_CLUSTER", SolanaConfig.cluster),
                usdc_mint=os.getenv("USDC_MINT", SolanaConfig.usdc_mint),
                jupiter_api_url=os.getenv("JUPITER_API_URL", SolanaConfig.jupiter_api_url),
                wallet_path=os.path.expanduser(os.getenv("WALLET_PATH", SolanaConfig.wallet_path)),
            ),
            llm=LLMConfig(
                api_key=os.getenv("OPENROUTER_API_KEY", "").split(",")[0].strip(),
                base_url=os.getenv("OPENROUTER_BASE_URL", LLMConfig.base_url),
                model=os.getenv("LLM_MODEL", LLMConfig.model),
                fallback_model=os.getenv("LLM_FALLBACK_MODEL", LLMConfig.fallback_model),
            ),
            survival=SurvivalConfig(
                thresholds=TierThresholds(
                    normal=_env_int("TIER_NORMAL_MICRO_USDC", 10_000_000),
                    low_compute=_env_int("TIER_LOW_COMPUTE_MICRO_USDC", 5_000_000),
                    critical=_env_int("TIER_CRITICAL_MICRO_USDC", 1_000_000),
                ),
                cadence=HeartbeatCadence(
                    normal=_env_int("HEARTBEAT_NORMAL_MINUTES", 5),
                    low_compute=_env_int("HEARTBEAT_LOW_COMPUTE_MINUTES", 15),
                    critical=critical_minutes,
                    dead=_env_int("HEARTBEAT_DEAD_MINUTES", critical_minutes),
                ),
            ),
            data_dir=os.getenv("DATA_DIR", "data"),
            github_token=os.getenv("GITHUB_TOKEN", ""),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 15),
            api_token=os.getenv("ROLY_API_TOKEN", ""),
        )

    def validate(self) -> "AgentConfig":
        if not self.identity.agent_id or not self.identity.public_key:
            raise ConfigError("Invalid configuration: missing identity information (AGENT_ID, AGENT_PUBLIC_KEY)")
        if not self.llm.api_key:
            raise ConfigError("Invalid configuration: missing reasoning API key (OPENROUTER_API_KEY)")
        try:
            self.survival.thresholds.validate()
        except ConstitutionViolation as e:
            raise ConfigError(str(e))
        cadence = self.survival.cadence
        if min(cadence.normal, cadence.low_compute, cadence.critical, cadence.dead) <= 0:
            raise ConfigError("Heartbeat intervals must be positive minutes")
        return self


def load_config() -> AgentConfig:
    """Read and validate. Raises ConfigError."""
    config = AgentConfig.from_env().validate()
    logger.info(
        f"Config loaded: agent={config.identity.agent_id} cluster={config.solana.cluster} "
        f"model={config.llm.model} data_dir={config.data_dir}"
    )
    return config
