from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from household_ledger.billing_period import WEEK_FIVE_LAST, WEEK_FIVE_POLICIES
from household_ledger.errors import StorageError, ValidationError
from household_ledger.ledger import DEFAULT_PAYOFF_DUE_DAY
from household_ledger.utils.contracts import FILING, validate_output

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "HOUSEHOLD_LEDGER_DATA_DIR"
WEEK_FIVE_POLICY_ENV = "HOUSEHOLD_LEDGER_WEEK_FIVE_POLICY"
DEFAULT_DATA_DIR = "data"
SETTINGS_FILE = "settings.json"
DEFAULT_UNDO_DEPTH = 5


@dataclass(frozen=True)
class LedgerSettings:
    data_dir: Path
    week_five_policy: str = WEEK_FIVE_LAST
    payoff_due_day: int = DEFAULT_PAYOFF_DUE_DAY
    undo_depth: int = DEFAULT_UNDO_DEPTH
    contract_mode: str = FILING


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except json.JSONDecodeError as e:
        raise StorageError(f"Invalid settings file {path}: {e}", path=str(path)) from e
    validate_output(payload, "ledger_settings", mode=FILING)
    return dict(payload)


def load_settings(data_dir: Path | str | None = None) -> LedgerSettings:
    """
    Resolve settings from (in order of precedence):
    1. The data_dir argument, else $HOUSEHOLD_LEDGER_DATA_DIR, else ./data.
    2. <data_dir>/settings.json, validated against the ledger_settings contract.
    3. $HOUSEHOLD_LEDGER_WEEK_FIVE_POLICY, which overrides the file.
    """
    resolved_dir = Path(data_dir or os.environ.get(DATA_DIR_ENV) or DEFAULT_DATA_DIR)
    values = _read_settings_file(resolved_dir / SETTINGS_FILE)

    env_policy = os.environ.get(WEEK_FIVE_POLICY_ENV)
    if env_policy:
        if env_policy not in WEEK_FIVE_POLICIES:
            raise ValidationError(
                f"{WEEK_FIVE_POLICY_ENV} must be one of {', '.join(WEEK_FIVE_POLICIES)}", field="week_five_policy"
            )
        values["week_five_policy"] = env_policy

    settings = LedgerSettings(data_dir=resolved_dir, **values)
    logger.debug(f"Loaded settings: {settings}")
    return settings
