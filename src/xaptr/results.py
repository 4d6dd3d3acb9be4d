from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

from .errors import ComparisonInputError, DuplicateMetricError, RawResultsFormatError
from .model import RawResultSet
from .paths import RAW_RESULTS_FILE_NAME


def _raw_results_schema() -> dict[str, Any]:
    text = resources.files("xaptr").joinpath("schemas").joinpath("raw_results.schema.json").read_text()
    return json.loads(text)


def validate_raw_results(payload: dict[str, Any]) -> None:
    """Raise `jsonschema.ValidationError` if `payload` is not a valid raw results document."""
    Draft202012Validator(_raw_results_schema()).validate(payload)


def write_raw_results(raw_set: RawResultSet, path: Path) -> Path:
    """Write `raw_set` to `path` exactly once.

    Raises FileExistsError if `path` exists; a raw results file is never overwritten.
    """
    payload = raw_set.to_dict()
    validate_raw_results(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    # "x" mode fails if another writer got there first.
    with path.open("x") as f:
        f.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
    return path


def resolve_raw_results_path(location: Path) -> Path:
    """Accept either a data directory or the raw results file itself."""
    if location.is_dir():
        return location / RAW_RESULTS_FILE_NAME
    return location


def load_raw_results(location: Path) -> RawResultSet:
    """Load and validate a raw results file (or the one inside a data directory).

    Unknown keys are ignored so files written by newer versions still load.
    """
    if not location.exists():
        raise ComparisonInputError(f"Results location does not exist: {location}")
    path = resolve_raw_results_path(location)
    if not path.is_file():
        raise ComparisonInputError(f"No {RAW_RESULTS_FILE_NAME} in {location}")
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise RawResultsFormatError(f"{path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ComparisonInputError(f"Could not read {path}: {e}") from e
    try:
        validate_raw_results(payload)
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise RawResultsFormatError(f"{path}: {where}: {e.message}") from e
    try:
        return RawResultSet.from_dict(payload, source_path=path.resolve())
    except (KeyError, TypeError, ValueError, DuplicateMetricError) as e:
        raise RawResultsFormatError(f"{path}: {e}") from e
