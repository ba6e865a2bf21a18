"""Configuration and key material."""

from pectra.config.key_manager import DigestSigner, LocalKeySigner, as_signer
from pectra.config.settings import Settings, load_env

__all__ = ["DigestSigner", "LocalKeySigner", "Settings", "as_signer", "load_env"]
