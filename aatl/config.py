from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from aatl.core.errors import MalformedDraftError


BASE_DIR = Path(__file__).resolve().parents[1]

ENTRY_POINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
ENTRY_POINT_V08 = "0x4337084D9E255Ff0702461CF8895CE9E3b5Ff108"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Default the working EntryPoint to the v0.7 singleton when unset."""

        super().model_post_init(__context)

        if not self.entry_point_address:
            object.__setattr__(self, "entry_point_address", self.entry_point_v07_address)

    log_level: str = Field(default="INFO", description="Logging level")

    # Endpoints
    bundler_url: str = Field(
        default="",
        description="Relayer (bundler) JSON-RPC endpoint",
        validation_alias=AliasChoices("bundler_url", "next_public_bundler_url"),
    )
    chain_rpc_url: str = Field(
        default="",
        description="Chain JSON-RPC endpoint used for nonce, chain id and fee reads",
        validation_alias=AliasChoices("chain_rpc_url", "rpc_url", "eth_rpc_url"),
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request HTTP timeout")

    # EntryPoint addresses
    entry_point_address: str = Field(
        default="",
        description="EntryPoint used when a call does not name one",
    )
    entry_point_v06_address: str = Field(default=ENTRY_POINT_V06, description="Well-known EntryPoint v0.6")
    entry_point_v07_address: str = Field(default=ENTRY_POINT_V07, description="Well-known EntryPoint v0.7")
    entry_point_v08_address: str = Field(default=ENTRY_POINT_V08, description="Well-known EntryPoint v0.8")
    entry_point_v08_prefix: str = Field(
        default="0x4337",
        description="Two-byte address prefix reserved for v0.8 EntryPoint deployments",
    )

    # EIP-7702
    eip7702_delegate_address: str = Field(
        default="",
        description="Delegate contract installed on EOAs by EIP-7702 authorizations",
    )

    # Receipt polling
    receipt_timeout_seconds: float = Field(default=60.0, gt=0, description="Receipt polling deadline")
    receipt_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Delay between receipt polls")

    # Best-effort bundling hint
    enable_bundle_now: bool = Field(
        default=True,
        description="Ask the relayer to bundle immediately after each submission",
    )
    bundle_now_method: str = Field(
        default="debug_bundler_sendBundleNow",
        description="Relayer debug method that forces immediate bundling",
    )

    @property
    def has_bundler(self) -> bool:
        return bool(self.bundler_url)

    def require_delegate(self, delegate: Optional[str] = None) -> str:
        resolved = delegate or self.eip7702_delegate_address
        if not resolved:
            raise MalformedDraftError(
                "EIP-7702 delegate address is not configured (EIP7702_DELEGATE_ADDRESS)",
                field_name="delegate",
            )
        return resolved


# Global settings instance
settings = Settings()
