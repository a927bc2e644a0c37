# Configuration: node and client settings
#
# Values come from the process environment after an optional .env file has
# been loaded with python-dotenv. Variables already set in the environment
# win over the .env file.
#
#   GATEWAY_RPC_URL         node URL used by the client/CLI
#   GATEWAY_PROGRAM_ID      base58 program id (default: built-in id)
#   GATEWAY_KEYPAIR         keypair file used to sign CLI transactions
#   GATEWAY_DB_PATH         SQLite ledger file served by the node
#   GATEWAY_AUDIT_DIR       directory for daily audit logs
#   GATEWAY_HOST / _PORT    node bind address
#   GATEWAY_FAUCET_ENABLED  allow POST /airdrop (1/0, true/false)

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import find_dotenv, load_dotenv

from .ledger.keys import Pubkey
from .program.state import DEFAULT_PROGRAM_ID

DEFAULT_RPC_URL = "http://127.0.0.1:8899"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8899
DEFAULT_KEYPAIR_PATH = Path("~/.config/onchain-gateway/id.json")
DEFAULT_DB_PATH = Path("./data/ledger.db")
DEFAULT_AUDIT_DIR = Path("./audit_logs")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class GatewaySettings:
    rpc_url: str = DEFAULT_RPC_URL
    program_id: Pubkey = DEFAULT_PROGRAM_ID
    keypair_path: Path = DEFAULT_KEYPAIR_PATH
    db_path: Path = DEFAULT_DB_PATH
    audit_dir: Path = DEFAULT_AUDIT_DIR
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    faucet_enabled: bool = True

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "GatewaySettings":
        """Build settings from the environment.

        Args:
            env_file: .env file to load first (default: nearest .env from cwd).
            environ: Mapping to read instead of os.environ. No .env file is
                loaded when given.

        Raises:
            ConfigError: A variable is set to an invalid value.
        """
        if environ is None:
            load_dotenv(env_file or find_dotenv(usecwd=True))
            environ = os.environ

        settings = cls()
        if "GATEWAY_RPC_URL" in environ:
            settings.rpc_url = environ["GATEWAY_RPC_URL"].rstrip("/")
        if "GATEWAY_PROGRAM_ID" in environ:
            try:
                settings.program_id = Pubkey.from_string(environ["GATEWAY_PROGRAM_ID"])
            except ValueError as e:
                raise ConfigError(f"GATEWAY_PROGRAM_ID: {e}") from e
        if "GATEWAY_KEYPAIR" in environ:
            settings.keypair_path = Path(environ["GATEWAY_KEYPAIR"])
        if "GATEWAY_DB_PATH" in environ:
            settings.db_path = Path(environ["GATEWAY_DB_PATH"])
        if "GATEWAY_AUDIT_DIR" in environ:
            settings.audit_dir = Path(environ["GATEWAY_AUDIT_DIR"])
        if "GATEWAY_HOST" in environ:
            settings.host = environ["GATEWAY_HOST"]
        if "GATEWAY_PORT" in environ:
            try:
                settings.port = int(environ["GATEWAY_PORT"])
            except ValueError as e:
                raise ConfigError("GATEWAY_PORT must be an integer") from e
        if "GATEWAY_FAUCET_ENABLED" in environ:
            settings.faucet_enabled = _parse_bool(
                "GATEWAY_FAUCET_ENABLED", environ["GATEWAY_FAUCET_ENABLED"]
            )
        return settings
