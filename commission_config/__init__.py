"""
commission_config -- single public entrypoint for settlement configuration.

Responsibility:
    Provides the ONLY way services obtain configuration at runtime, through
    ``get_active_config()``.  Loads the packaged ``defaults.yaml``, layers an
    optional override file and ``COMMISSION_*`` environment variables on
    top, validates, and returns a frozen ``SettlementConfig``.

Architecture position:
    Configuration -- sits above ``commission_kernel``.  Kernel services
    receive a ``SettlementConfig`` instance; they never read files or the
    environment themselves.

Failure modes:
    - ``FileNotFoundError`` -- override path does not exist.
    - ``ConfigurationError`` -- a value fails validation.
    - ``SQLAlchemyError`` -- the capability probe could not inspect the
      schema.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from sqlalchemy.engine import Engine

from commission_config.loader import (
    apply_env_overrides,
    load_yaml_file,
    merge_dicts,
    parse_config,
)
from commission_config.probe import probe_capabilities
from commission_config.schema import (
    LedgerCapabilities,
    ReceiptStorageSettings,
    RetryPolicy,
    SettlementConfig,
    StripeSettings,
)
from commission_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(
    engine: Engine | None = None,
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> SettlementConfig:
    """The ONLY public configuration entrypoint.

    Args:
        engine: When given, the capability probe runs against it once and
            its result is frozen into the returned config.
        path: Optional YAML override file layered on the defaults.
        env: Environment mapping; defaults to ``os.environ``.

    Returns:
        A frozen, validated ``SettlementConfig``.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = merge_dicts(data, load_yaml_file(Path(path)))
    data = apply_env_overrides(data, os.environ if env is None else env)

    capabilities = probe_capabilities(engine) if engine is not None else None
    config = parse_config(data, capabilities=capabilities)

    logger.info(
        "settlement_config_loaded",
        extra={
            "preferred_method": config.preferred_method,
            "default_currency": config.default_currency,
            "due_days": config.due_days,
            "allocation_hint_method": config.allocation_hint_method,
            "debt_reference_sync": config.capabilities.debt_reference_sync,
            "override_path": str(path) if path is not None else None,
        },
    )
    return config


__all__ = [
    "get_active_config",
    "probe_capabilities",
    "SettlementConfig",
    "RetryPolicy",
    "StripeSettings",
    "ReceiptStorageSettings",
    "LedgerCapabilities",
]
