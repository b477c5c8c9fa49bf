from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

from sscoffea.analysis_config import LUMIS

logger = logging.getLogger(__name__)

# Metadata every dataset needs; simulation additionally needs normalisation inputs.
_REQUIRED_METADATA = ("sample", "era", "datatype", "physics_group")
_REQUIRED_MC_METADATA = ("xsec", "genEventSumw")


def list_eras() -> list[str]:
    """Return supported era strings."""
    return list(LUMIS.keys())


def load_json(filepath):
    """
    Load JSON data from the specified file.
    """
    try:
        with open(filepath, 'r', encoding='utf-8') as file:
            data = json.load(file)
            logger.info(f"Successfully loaded JSON file: {filepath}")
            return data
    except Exception as e:
        raise RuntimeError(f"Failed to read JSON file {filepath}: {e}") from e


def _short_list(items: list[str], *, limit: int = 8) -> str:
    if not items:
        return "(none)"
    if len(items) <= limit:
        return ", ".join(items)
    return ", ".join(items[:limit]) + f", ... (+{len(items) - limit} more)"


def validate_fileset_schema(fileset: object, *, filepath: str | None = None) -> None:
    """Validate that the fileset matches what `bin/run_analysis.py` expects.

    Expected structure:
      {dataset_key: {"files": {path: "Events", ...}, "metadata": {...}}, ...}
    """
    where = f" ({filepath})" if filepath else ""

    if not isinstance(fileset, Mapping):
        raise ValueError(f"Fileset must be a JSON object (dict-like){where}.")
    if not fileset:
        raise ValueError(f"Fileset is empty{where}.")

    for ds_key, ds_val in fileset.items():
        if not isinstance(ds_val, Mapping):
            raise ValueError(f"Fileset['{ds_key}'] must be an object{where}.")
        files = ds_val.get("files")
        md = ds_val.get("metadata")
        if not isinstance(files, Mapping):
            raise ValueError(f"Fileset['{ds_key}']['files'] must be an object mapping file->treename{where}.")
        if not isinstance(md, Mapping):
            raise ValueError(f"Fileset['{ds_key}']['metadata'] must be an object{where}.")

        required = list(_REQUIRED_METADATA)
        if str(md.get("datatype", "")).strip().lower() == "mc":
            required += _REQUIRED_MC_METADATA
        missing = [k for k in required if k not in md]
        if missing:
            raise ValueError(f"Fileset['{ds_key}']['metadata'] is missing {missing}{where}.")
        if md["era"] not in LUMIS:
            raise ValueError(
                f"Fileset['{ds_key}'] has unknown era '{md['era']}'; expected one of {list_eras()}{where}."
            )


def filter_by_process(fileset: Mapping, desired_process: str | None) -> dict:
    if desired_process is None:
        return dict(fileset)
    return {
        ds: data
        for ds, data in fileset.items()
        if (data.get("metadata") or {}).get("physics_group") == desired_process
    }


def load_and_select_fileset(
    *,
    filepath: Path,
    desired_process: str | None = None,
    maxfiles: int | None = None,
) -> dict:
    if not filepath.exists():
        raise FileNotFoundError(f"Fileset JSON not found: {filepath}.")

    fileset = load_json(str(filepath))
    validate_fileset_schema(fileset, filepath=str(filepath))

    filtered = filter_by_process(fileset, desired_process)
    if not filtered:
        groups = sorted({
            (ds.get("metadata") or {}).get("physics_group", "") for ds in fileset.values()
        })
        raise ValueError(
            f"Selection matched 0 datasets for sample '{desired_process}'. "
            f"Available physics_group values (subset): {_short_list(groups)}"
        )

    if maxfiles is not None:
        filtered = {
            ds: {**data, "files": dict(list(data["files"].items())[:maxfiles])}
            for ds, data in filtered.items()
        }
    return filtered
