"""
Configuration management for the wallet service.
"""

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wbcore.constants import DEFAULT_FEE_RATE
from wbcore.crypto import validate_private_key_hex
from wbcore.errors import InvalidSpecError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WALLET_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["main", "test", "mainnet", "testnet"] = "test"

    # 64 lowercase hex characters; empty means "generate on startup"
    private_key: str = ""

    http_host: str = "127.0.0.1"
    http_port: int = 3321

    fee_rate: int = DEFAULT_FEE_RATE  # sat/kB

    # Development helper: credit the wallet on startup (0 = disabled)
    initial_funding: int = 0

    log_level: str = "INFO"

    rpc_timeout: float = 30.0

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: str) -> str:
        if not v:
            return v
        try:
            return validate_private_key_hex(v)
        except InvalidSpecError as e:
            raise ValueError(str(e)) from e


def get_settings() -> Settings:
    return Settings()
