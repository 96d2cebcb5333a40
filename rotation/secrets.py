"""Secrets management: load Kraken API credentials from environment or config file.

Priority order:
1. Environment variables: KRAKEN_API_KEY, KRAKEN_API_SECRET
2. Config file: ~/.kraken_config.json or custom path via ENV KRAKEN_CONFIG_PATH
"""
import json
import os
from pathlib import Path
from typing import Mapping, NamedTuple, Optional


class KrakenCredentials(NamedTuple):
    api_key: str
    api_secret: str  # base64, as issued by Kraken


def load_credentials(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> KrakenCredentials:
    """Load Kraken credentials from env or config file.

    Raises:
        ValueError: If credentials are not found or incomplete
    """
    environ = os.environ if environ is None else environ
    api_key = environ.get("KRAKEN_API_KEY")
    api_secret = environ.get("KRAKEN_API_SECRET")

    if api_key and api_secret:
        return KrakenCredentials(api_key=api_key, api_secret=api_secret)

    if config_path is None:
        config_path = environ.get("KRAKEN_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".kraken_config.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        api_key = cfg.get("api_key") or api_key
        api_secret = cfg.get("api_secret") or api_secret

    if not api_key or not api_secret:
        raise ValueError(
            "Missing Kraken credentials. Provide via:\n"
            "  - Environment: KRAKEN_API_KEY, KRAKEN_API_SECRET\n"
            f"  - Config file: {config_path}\n"
            "  - KRAKEN_CONFIG_PATH env var to override config location"
        )

    return KrakenCredentials(api_key=api_key, api_secret=api_secret)
