"""
Reference table: which artifact holds each stage of each combination.

One row per (analysis, target, comparator, outcome) that was not excluded.
Every stage kind has a ``<kind>_file`` column holding:

- the artifact file name when the task is committed,
- ``NOT_APPLICABLE`` ("") when the stage is not configured for the analysis,
- None when the stage was not required for the outcome, or its task failed
  or was skipped.

The ``status`` column tells those None cells apart: ``ok`` when every planned
task of the row is committed, ``failed`` when one of them failed (the first
failing stage is in ``failed_stage``), ``skipped`` when one was skipped after an
upstream failure, and ``incomplete`` when an artifact is simply missing (never
run, or deleted since).

The table is persisted as JSON records so the "" / None distinction
survives a round trip.
"""
from __future__ import annotations

import math
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from config import REFERENCE_TABLE_FILE
from utils.cache import canonicalize
from utils.helpers import read_json, write_json

from .errors import NotFoundError
from .planner import NOT_APPLICABLE, TaskPlan
from .store import ArtifactStore
from .tasks import StageKind


ID_COLUMNS = ['analysis_id', 'target_id', 'comparator_id', 'outcome_id']
REFERENCE_COLUMNS = (
    ID_COLUMNS
    + ['outcome_of_interest', 'true_effect_size']
    + [kind.reference_column for kind in StageKind]
    + ['status', 'failed_stage']
)


def build_reference_table(
    plan: TaskPlan,
    store: ArtifactStore,
    task_states: Optional[dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Derive the reference table from a plan and the store contents.

    Parameters
    ----------
    plan : TaskPlan
        Planned rows and tasks
    store : ArtifactStore
        Store of committed artifacts
    task_states : dict, optional
        Fingerprint -> final task state value ('failed', 'skipped', ...) of
        the last run. Without it, uncommitted tasks count as incomplete.

    Returns
    -------
    pd.DataFrame
        One row per planned combination, in plan order
    """
    committed = set(store.list_artifacts()['file_name'])
    task_states = task_states or {}
    records = []
    for row in plan.rows:
        record = {
            'analysis_id': row.analysis_id,
            'target_id': row.target_id,
            'comparator_id': row.comparator_id,
            'outcome_id': row.outcome_id,
            'outcome_of_interest': row.outcome_of_interest,
            'true_effect_size': row.true_effect_size,
        }
        outcomes = {}
        for kind in StageKind:
            value = row.fingerprint(kind)
            if value is None or value == NOT_APPLICABLE:
                record[kind.reference_column] = value
                continue
            file_name = ArtifactStore.file_name(value, kind)
            if file_name in committed:
                record[kind.reference_column] = file_name
                outcomes[kind] = 'ok'
            else:
                record[kind.reference_column] = None
                state = task_states.get(value)
                outcomes[kind] = state if state in ('failed', 'skipped') else 'incomplete'
        record.update(_row_status(outcomes))
        records.append(record)
    return _to_frame(records)


def _row_status(outcomes: dict) -> dict:
    """Combine per-stage outcomes (in pipeline order) into one row status."""
    failed = [kind for kind, outcome in outcomes.items() if outcome == 'failed']
    if failed:
        return {'status': 'failed', 'failed_stage': failed[0].value}
    for status in ('skipped', 'incomplete'):
        if status in outcomes.values():
            return {'status': status, 'failed_stage': None}
    return {'status': 'ok', 'failed_stage': None}


def _to_frame(records: list[dict]) -> pd.DataFrame:
    df = pd.DataFrame(records, columns=REFERENCE_COLUMNS)
    # Keep None (not NaN) in file columns
    for column in [kind.reference_column for kind in StageKind] + ['failed_stage']:
        df[column] = pd.Series([r.get(column) for r in records], index=df.index, dtype=object)
    return df


def _clean(value):
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def save_reference_table(reference_table: pd.DataFrame, output_folder: Union[str, Path]) -> Path:
    """Persist the reference table as JSON records in the output folder."""
    records = [
        {k: _clean(v) for k, v in canonicalize(record).items()}
        for record in reference_table.to_dict(orient='records')
    ]
    return write_json(Path(output_folder) / REFERENCE_TABLE_FILE, records)


def load_reference_table(output_folder: Union[str, Path]) -> pd.DataFrame:
    """
    Load the persisted reference table.

    Raises
    ------
    NotFoundError
        If no reference table has been written to the folder
    """
    path = Path(output_folder) / REFERENCE_TABLE_FILE
    if not path.exists():
        raise NotFoundError(f"No reference table in {output_folder}")
    return _to_frame(read_json(path))
