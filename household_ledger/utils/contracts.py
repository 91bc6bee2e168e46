import json
import logging
from pathlib import Path
from typing import Any, Dict

import jsonschema
from jsonschema.exceptions import ValidationError

from household_ledger.errors import LedgerError

logger = logging.getLogger(__name__)

FILING = "FILING"
REVIEW = "REVIEW"
CONTRACT_MODES = (FILING, REVIEW)


class ContractError(LedgerError):
    """Raised when data about to be persisted violates its data contract."""

    pass


def load_schema(schema_name: str) -> Dict[str, Any]:
    """Load a JSON schema from the package."""
    schema_path = Path(__file__).parent.parent / "schemas" / f"{schema_name}.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_name}")

    with open(schema_path, "r", encoding="utf-8") as f:
        return dict(json.load(f))


def validate_output(data: Any, schema_name: str, mode: str = FILING) -> None:
    """
    Validate data against a JSON schema.

    Args:
        data: The payload to validate (month file, claims list, settings).
        schema_name: Name of the schema file (without .json extension).
        mode: 'FILING' (raises error) or 'REVIEW' (logs warning).

    Raises:
        ContractError: If validation fails and mode is FILING.
    """
    try:
        schema = load_schema(schema_name)
        jsonschema.validate(instance=data, schema=schema)
    except (ValidationError, FileNotFoundError) as e:
        detail = e.message if isinstance(e, ValidationError) else str(e)
        msg = f"Data Contract Violation ({schema_name}): {detail}"
        if mode == FILING:
            raise ContractError(msg) from e
        logger.warning(msg)
