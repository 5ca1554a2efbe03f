"""
Configuration Loader (``market_config.loader``).

Responsibility
--------------
Loads a marketplace YAML document and parses it into a
``MarketplaceConfig``.  Runtime callers go through
``market_config.get_active_config()``, not this module.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or bad values  -> ``ValueError``.
* A float ``fee_rate`` is accepted only through its string form, so the
  YAML ``0.05`` and ``"0.05"`` both become ``Decimal("0.05")``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from market_config.schema import MarketplaceConfig

_KNOWN_KEYS = frozenset(f.name for f in fields(MarketplaceConfig))


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def parse_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{field_name}: expected a decimal, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{field_name}: expected a decimal, got {value!r}") from e


def parse_marketplace_config(data: dict[str, Any]) -> MarketplaceConfig:
    """
    Build a MarketplaceConfig from the ``marketplace`` section (or the
    top-level mapping when there is no such section).
    """
    section = data.get("marketplace", data)
    if section is None:
        section = {}
    unknown = set(section) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"Unknown marketplace config keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = dict(section)
    if "fee_rate" in kwargs:
        kwargs["fee_rate"] = parse_decimal(kwargs["fee_rate"], "fee_rate")
    if "collaborator_timeout_seconds" in kwargs:
        kwargs["collaborator_timeout_seconds"] = float(kwargs["collaborator_timeout_seconds"])
    for key in ("read_retries", "collaborator_workers", "notification_workers"):
        if key in kwargs:
            kwargs[key] = int(kwargs[key])
    if "sms_enabled" in kwargs:
        kwargs["sms_enabled"] = bool(kwargs["sms_enabled"])
    return MarketplaceConfig(**kwargs)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical input, identical hash."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
