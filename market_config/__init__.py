"""
market_config -- single public entrypoint for marketplace configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    directly.

Architecture position:
    Configuration -- sits above ``market_kernel`` and below
    ``market_services``.  The kernel never imports from here; services
    receive the values they need at construction.

Failure modes:
    - ``FileNotFoundError`` -- the requested config file does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``market_config_loaded`` log entry with the source path, checksum and
    the effective fee rate and currency.
"""

from __future__ import annotations

from pathlib import Path

from market_config.loader import compute_checksum, load_yaml_file, parse_marketplace_config
from market_config.schema import MarketplaceConfig
from market_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

__all__ = ["DEFAULT_CONFIG_PATH", "MarketplaceConfig", "get_active_config"]


def get_active_config(config_path: Path | str | None = None) -> MarketplaceConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: YAML file to load.  Defaults to the packaged
            ``defaults.yaml``.

    Returns:
        A validated, frozen MarketplaceConfig.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    data = load_yaml_file(path)
    config = parse_marketplace_config(data)

    _logger.info(
        "market_config_loaded",
        extra={
            "config_path": str(path),
            "checksum": compute_checksum(data),
            "fee_rate": str(config.fee_rate),
            "currency": config.currency,
            "rounding": config.rounding,
        },
    )
    return config
