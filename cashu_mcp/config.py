"""Runtime configuration resolved from the environment and ``.env`` file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Mapping

from bip_utils import (
    Bip39Languages,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39WordsNum,
)
from dotenv import dotenv_values, load_dotenv

from .types import ErrorCode, WalletApiError

logger = logging.getLogger(__name__)

SEED_ENV_VAR = "CASHU_SEED"
DATABASE_PATH_ENV_VAR = "CASHU_DATABASE_PATH"
DEFAULT_MINT_ENV_VAR = "CASHU_DEFAULT_MINT"
SERVER_NAME_ENV_VAR = "MCP_SERVER_NAME"
SERVER_VERSION_ENV_VAR = "MCP_SERVER_VERSION"
LOG_LEVEL_ENV_VAR = "LOG_LEVEL"
SERVER_PRIVATE_KEY_ENV_VAR = "SERVER_PRIVATE_KEY"
RELAYS_ENV_VAR = "RELAYS"
ALLOWED_PUBLIC_KEYS_ENV_VAR = "ALLOWED_PUBLIC_KEYS"

DEFAULT_DATABASE_PATH = "./cashu.db"
DEFAULT_SERVER_NAME = "cashu-wallet-mcp-server"
DEFAULT_SERVER_VERSION = "1.0.0"
DEFAULT_SERVER_DESCRIPTION = "MCP server for Cashu wallet operations"

LogLevel = Literal["debug", "info", "warn", "error"]
LOG_LEVELS: tuple[LogLevel, ...] = ("debug", "info", "warn", "error")


def configuration_error(message: str) -> WalletApiError:
    return WalletApiError(ErrorCode.CONFIGURATION_ERROR, message)


# ──────────────────────────────────────────────────────────────────────────────
# Configuration objects
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WalletConfig:
    seed: str = field(repr=False)
    database_path: str = DEFAULT_DATABASE_PATH
    default_mint: str | None = None


@dataclass(frozen=True)
class ServerIdentity:
    name: str = DEFAULT_SERVER_NAME
    version: str = DEFAULT_SERVER_VERSION
    description: str = DEFAULT_SERVER_DESCRIPTION


@dataclass(frozen=True)
class TransportConfig:
    """Settings for exposing the server over a networked transport."""

    private_key: str | None = field(default=None, repr=False)
    relays: tuple[str, ...] = ()
    # Empty means every caller is allowed
    allowed_public_keys: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return self.private_key is not None


@dataclass(frozen=True)
class ServerConfig:
    wallet: WalletConfig
    server: ServerIdentity = field(default_factory=ServerIdentity)
    transport: TransportConfig = field(default_factory=TransportConfig)
    log_level: LogLevel = "info"


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────


def parse_list(value: str | None) -> tuple[str, ...]:
    """Split a comma separated value, dropping blanks and duplicates.

    Example: ``"wss://a, wss://b,,wss://a"`` -> ``("wss://a", "wss://b")``
    """
    if not value:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(dict.fromkeys(item for item in items if item))


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def generate_mnemonic() -> str:
    """Generate a 12 word BIP-39 mnemonic from a secure random source.

    Raises:
        WalletApiError: CONFIGURATION_ERROR if the generated phrase does not
            validate. This guards against a broken generator.
    """
    mnemonic = str(
        Bip39MnemonicGenerator(Bip39Languages.ENGLISH).FromWordsNumber(
            Bip39WordsNum.WORDS_NUM_12
        )
    )
    if not Bip39MnemonicValidator(Bip39Languages.ENGLISH).IsValid(mnemonic):
        raise configuration_error("Failed to generate valid BIP-39 mnemonic")
    return mnemonic


def save_seed_to_env_file(mnemonic: str, env_file: Path) -> bool:
    """Append the seed to ``env_file`` unless a seed line already exists.

    An existing ``CASHU_SEED`` entry is authoritative and never overwritten.

    Returns:
        True if the seed was written, False otherwise.
    """
    seed_line = f'{SEED_ENV_VAR}="{mnemonic}"\n'
    try:
        content = ""
        if env_file.exists():
            content = env_file.read_text()
            if SEED_ENV_VAR in dotenv_values(env_file):
                logger.warning(
                    "%s already exists in %s - not overwriting", SEED_ENV_VAR, env_file
                )
                return False
        if content and not content.endswith("\n"):
            content += "\n"
        env_file.write_text(content + seed_line)
    except OSError as e:
        logger.warning("Failed to save seed to %s: %s", env_file, e)
        logger.warning(
            "Please set the %s environment variable with the generated mnemonic",
            SEED_ENV_VAR,
        )
        return False

    logger.warning("Generated seed saved to %s - review and secure this file!", env_file)
    return True


# ──────────────────────────────────────────────────────────────────────────────
# Resolver
# ──────────────────────────────────────────────────────────────────────────────


class ConfigResolver:
    """Resolve a ``ServerConfig`` from environment variables.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``).
        env_file: ``.env`` file used to load defaults and persist a freshly
            generated seed (defaults to ``.env`` in the working directory).
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        *,
        env_file: Path | None = None,
    ) -> None:
        self._environ = environ
        self.env_file = env_file or Path.cwd() / ".env"
        self._config: ServerConfig | None = None

    def load(self) -> ServerConfig:
        """Load, validate and cache the configuration."""
        if self._environ is None:
            # Process environment wins over the file
            load_dotenv(self.env_file, override=False)
        env = self._environ if self._environ is not None else os.environ

        try:
            log_level = (env.get(LOG_LEVEL_ENV_VAR) or "info").strip().lower()
            if log_level not in LOG_LEVELS:
                raise configuration_error(
                    f"Invalid {LOG_LEVEL_ENV_VAR} {log_level!r}, "
                    f"expected one of {', '.join(LOG_LEVELS)}"
                )

            seed = _optional(env.get(SEED_ENV_VAR)) or self._generate_seed()

            config = ServerConfig(
                wallet=WalletConfig(
                    seed=seed,
                    database_path=_optional(env.get(DATABASE_PATH_ENV_VAR))
                    or DEFAULT_DATABASE_PATH,
                    default_mint=_optional(env.get(DEFAULT_MINT_ENV_VAR)),
                ),
                server=ServerIdentity(
                    name=_optional(env.get(SERVER_NAME_ENV_VAR)) or DEFAULT_SERVER_NAME,
                    version=_optional(env.get(SERVER_VERSION_ENV_VAR))
                    or DEFAULT_SERVER_VERSION,
                ),
                transport=TransportConfig(
                    private_key=_optional(env.get(SERVER_PRIVATE_KEY_ENV_VAR)),
                    relays=parse_list(env.get(RELAYS_ENV_VAR)),
                    allowed_public_keys=parse_list(env.get(ALLOWED_PUBLIC_KEYS_ENV_VAR)),
                ),
                log_level=log_level,  # type: ignore[arg-type]
            )
        except WalletApiError:
            raise
        except Exception as e:
            raise configuration_error(f"Failed to load configuration: {e}") from e

        self._config = config
        logger.info("Configuration loaded from environment variables")
        return config

    @property
    def config(self) -> ServerConfig:
        if self._config is None:
            raise configuration_error("Configuration not loaded")
        return self._config

    def is_loaded(self) -> bool:
        return self._config is not None

    def _generate_seed(self) -> str:
        mnemonic = generate_mnemonic()

        logger.warning("SECURITY WARNING: No %s environment variable provided", SEED_ENV_VAR)
        logger.warning("Generated new BIP-39 mnemonic: %s", mnemonic)
        logger.warning(
            "Save this mnemonic securely and never share it. "
            "It is your wallet backup - lose it and lose access to funds."
        )

        save_seed_to_env_file(mnemonic, self.env_file)
        return mnemonic


def load_config(env_file: Path | None = None) -> ServerConfig:
    """Resolve configuration from the process environment."""
    return ConfigResolver(env_file=env_file).load()
