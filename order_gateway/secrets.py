"""API credential loading.

Lookup order:
1. Environment: BINANCE_API_KEY and BINANCE_API_SECRET (both must be set)
2. JSON file ``{"api_key": ..., "api_secret": ...}`` at the given path,
   else BINANCE_CONFIG_PATH, else ~/.binance_config.json

There are no built-in fallback keys: a gateway without credentials refuses
to start.
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional

ENV_KEY = "BINANCE_API_KEY"
ENV_SECRET = "BINANCE_API_SECRET"
ENV_CONFIG_PATH = "BINANCE_CONFIG_PATH"
DEFAULT_CONFIG_FILE = ".binance_config.json"


class BinanceCredentials(NamedTuple):
    api_key: str
    api_secret: str

    def masked_key(self) -> str:
        """API key with all but the first four characters hidden, for logs."""
        return mask(self.api_key)


def mask(value: str, visible: int = 4) -> str:
    if len(value) <= visible:
        return "*" * len(value)
    return value[:visible] + "*" * (len(value) - visible)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def default_config_path() -> str:
    return os.getenv(ENV_CONFIG_PATH) or str(Path.home() / DEFAULT_CONFIG_FILE)


def load_credentials(config_path: Optional[str] = None) -> BinanceCredentials:
    """Load Binance credentials from env or a JSON file.

    Raises:
        ValueError: no complete key pair found, or the file is unreadable
    """
    api_key = _clean(os.getenv(ENV_KEY))
    api_secret = _clean(os.getenv(ENV_SECRET))
    if api_key and api_secret:
        return BinanceCredentials(api_key, api_secret)

    path = Path(config_path or default_config_path())
    if path.exists():
        try:
            cfg = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load config from {path}: {e}")
        if not isinstance(cfg, dict):
            raise ValueError(f"Failed to load config from {path}: expected a JSON object")
        api_key = _clean(cfg.get("api_key")) or api_key
        api_secret = _clean(cfg.get("api_secret")) or api_secret

    if not api_key or not api_secret:
        raise ValueError(
            "Missing Binance credentials. Provide via:\n"
            f"  - Environment: {ENV_KEY}, {ENV_SECRET}\n"
            f"  - Config file: {path}\n"
            f"  - {ENV_CONFIG_PATH} env var to override config location"
        )
    return BinanceCredentials(api_key, api_secret)


def save_config(config_path: str, api_key: str, api_secret: str) -> None:
    """Write credentials as JSON, readable by the owner only.

    The file is created with mode 0600.
    """
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret}, f, indent=2)
    if os.name == "posix":
        os.chmod(str(path), 0o600)
