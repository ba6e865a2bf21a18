"""Resolved configuration for the probe and the sender.

Values come from the environment (optionally an env file loaded with
python-dotenv) once, at the edge, and are then passed around as an immutable
``Settings`` object.
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from pectra.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_GAS_LIMIT = 100_000


def load_env(env_file: Optional[str] = None) -> None:
    # Load base .env first if present, then the explicit file on top of it
    base_env = Path(".env")
    if base_env.exists():
        load_dotenv(base_env)
    if env_file:
        if not Path(env_file).exists():
            raise ConfigError(f"Env file not found: {env_file}")
        load_dotenv(env_file, override=True)


def require_env(name: str) -> str:
    v = os.getenv(name)
    if not v:
        raise ConfigError(f"Missing env var: {name}")
    return v


def _optional_int(name: str, default: Optional[int] = None) -> Optional[int]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v, 0)
    except ValueError as exc:
        raise ConfigError(f"Env var {name} is not an integer: {v!r}") from exc


def _optional_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError as exc:
        raise ConfigError(f"Env var {name} is not a number: {v!r}") from exc


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    private_key: Optional[str] = None
    implementation_address: Optional[str] = None
    chain_id: Optional[int] = None
    auth_nonce: Optional[int] = None
    timeout: float = DEFAULT_TIMEOUT
    gas_limit: int = DEFAULT_GAS_LIMIT
    priority_fee_wei: int = 1
    max_fee_multiplier: int = 2

    @classmethod
    def from_env(
        cls,
        env_file: Optional[str] = None,
        require_key: bool = True,
        rpc_url: Optional[str] = None,
        require_rpc: bool = True,
    ) -> "Settings":
        """Build settings from environment variables.

        Args:
            env_file: Extra env file to load before reading
            require_key: Whether PRIVATE_KEY must be present
            rpc_url: Endpoint to use instead of RPC_URL
            require_rpc: Whether RPC_URL must be present (offline signing does not need it)

        Raises:
            ConfigError: Missing or unparsable variable
        """
        load_env(env_file)
        settings = cls(
            rpc_url=rpc_url or (require_env("RPC_URL") if require_rpc else os.getenv("RPC_URL", "")),
            private_key=require_env("PRIVATE_KEY") if require_key else os.getenv("PRIVATE_KEY"),
            implementation_address=os.getenv("IMPLEMENTATION_ADDRESS") or None,
            chain_id=_optional_int("CHAIN_ID"),
            auth_nonce=_optional_int("AUTH_NONCE"),
            timeout=_optional_float("RPC_TIMEOUT", DEFAULT_TIMEOUT),
            gas_limit=_optional_int("GAS_LIMIT", DEFAULT_GAS_LIMIT),
            priority_fee_wei=_optional_int("PRIORITY_FEE_WEI", 1),
            max_fee_multiplier=_optional_int("MAX_FEE_MULTIPLIER", 2),
        )
        logger.debug("Loaded settings for %s (chain_id=%s)", settings.rpc_url, settings.chain_id)
        return settings

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the non-None values in ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def __repr__(self) -> str:
        # never print the key
        key = "<set>" if self.private_key else None
        return (
            f"Settings(rpc_url={self.rpc_url!r}, private_key={key}, "
            f"implementation_address={self.implementation_address!r}, chain_id={self.chain_id}, "
            f"auth_nonce={self.auth_nonce}, timeout={self.timeout})"
        )
