import os
import sys
from pathlib import Path
from typing import List, Optional

from environs import Env  # type: ignore
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

env = Env()

VERSION = "0.1.0"


def find_env_file():
    # env file: default to current dir, else home dir
    env_file = os.path.join(os.getcwd(), ".env")
    if not os.path.isfile(env_file):
        env_file = os.path.join(str(Path.home()), ".lnmint", ".env")
    if os.path.isfile(env_file):
        env.read_env(env_file, recurse=False, override=True)
    else:
        env_file = ""
    return env_file


class LnMintSettings(BaseSettings):
    env_file: Optional[str] = Field(default=None)
    lightning_fee_percent: float = Field(default=1.0)
    lightning_reserve_fee_min: int = Field(default=2000)
    max_order: int = Field(default=64)

    model_config = SettingsConfigDict(
        env_file=find_env_file() or None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class EnvSettings(LnMintSettings):
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_to_file: bool = Field(default=False)
    mint_dir: str = Field(default=os.path.join(str(Path.home()), ".lnmint"))
    db_connection_pool: bool = Field(default=True)


class MintSettings(LnMintSettings):
    mint_private_key: Optional[str] = Field(default=None)

    mint_database: str = Field(default="data/mint")
    mint_test_database: str = Field(default="test_data/test_mint")
    mint_max_secret_length: int = Field(default=512)

    mint_lightning_payment_timeout: float = Field(
        default=60.0,
        gt=0,
        title="Lightning payment timeout",
        description="Seconds to wait for a payment before its outcome is treated as unknown.",
    )
    mint_inactive_keyset_retention_days: Optional[int] = Field(
        default=None,
        gt=0,
        title="Inactive keyset retention",
        description="Days after deactivation during which proofs of a keyset are accepted. None keeps them forever.",
    )
    mint_regular_tasks_interval_seconds: int = Field(
        default=3600,
        gt=0,
        title="Regular tasks interval",
        description="Interval for reconciling pending melts and pruning expired quotes.",
    )
    mint_disable_melt_on_error: bool = Field(default=False)


class MintBackends(MintSettings):
    mint_backend_bolt11_sat: str = Field(default="")
    mint_backend_bolt11_usd: str = Field(default="")
    mint_backend_bolt11_eur: str = Field(default="")


class MintLimits(MintSettings):
    mint_max_request_length: int = Field(
        default=1000,
        gt=0,
        title="Maximum request length",
        description="Maximum number of inputs or outputs in a single request.",
    )

    mint_peg_out_only: bool = Field(
        default=False,
        title="Peg-out only",
        description="Mint allows no mint operations.",
    )
    mint_max_peg_in: Optional[int] = Field(
        default=None,
        gt=0,
        title="Maximum peg-in",
        description="Maximum amount for a mint operation.",
    )
    mint_max_peg_out: Optional[int] = Field(
        default=None,
        gt=0,
        title="Maximum peg-out",
        description="Maximum amount for a melt operation.",
    )
    mint_max_balance: Optional[int] = Field(
        default=None,
        gt=0,
        title="Maximum mint balance",
        description="Maximum mint balance.",
    )


class FakeWalletSettings(MintSettings):
    fakewallet_brr: bool = Field(default=True)
    fakewallet_delay_outgoing_payment: Optional[float] = Field(default=3.0)
    fakewallet_delay_incoming_payment: Optional[float] = Field(default=3.0)
    fakewallet_payment_state: Optional[str] = Field(default="SETTLED")
    fakewallet_payment_state_exception: Optional[bool] = Field(default=False)
    fakewallet_pay_invoice_state: Optional[str] = Field(default="SETTLED")
    fakewallet_pay_invoice_state_exception: Optional[bool] = Field(default=False)
    fakewallet_fee_paid_msat: int = Field(default=1000)
    fakewallet_btc_price: float = Field(default=60000.0)


class MintInformation(LnMintSettings):
    mint_info_name: str = Field(default="Lightning ecash mint")
    mint_info_description: Optional[str] = Field(default=None)
    mint_info_description_long: Optional[str] = Field(default=None)
    mint_info_contact: List[List[str]] = Field(default=[])
    mint_info_motd: Optional[str] = Field(default=None)
    mint_info_icon_url: Optional[str] = Field(default=None)
    mint_info_urls: Optional[List[str]] = Field(default=None)


class Settings(
    EnvSettings,
    FakeWalletSettings,
    MintLimits,
    MintBackends,
    MintSettings,
    MintInformation,
    LnMintSettings,
):
    version: str = Field(default=VERSION)


settings = Settings()


def startup_settings_tasks():
    # set env_file (this does not affect the settings module, it's just for reading)
    settings.env_file = find_env_file()

    if not settings.debug:
        # set traceback limit
        sys.tracebacklimit = 0

    # replace ~ with home directory in mint_dir
    settings.mint_dir = settings.mint_dir.replace("~", str(Path.home()))
