"""
Content-addressed Artifact Store.

Every committed task output lives in one pickle file whose name is derived
from the stage kind and the task fingerprint. A committed file is never
rewritten, and a file that exists under its final name is always complete:
writes go to a hidden temporary file that is renamed on success. Existence of
an artifact therefore means "this task is done", which is what makes runs
resumable.

Usage
-----
    from cohort_method.store import ArtifactStore
    from cohort_method.tasks import StageKind

    store = ArtifactStore(output_folder)

    if not store.has(fp, StageKind.PROPENSITY):
        store.put(fp, StageKind.PROPENSITY, population)

    population = store.load(fp, StageKind.PROPENSITY)
    print(store.size())
"""
from __future__ import annotations

import os
import pickle
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from config import ARTIFACT_SUFFIX, TEMP_SUFFIX
from utils.helpers import ensure_dir

from .errors import NotFoundError, StoreIOError
from .tasks import StageKind


_ARTIFACT_PATTERN = re.compile(
    r'^(?P<prefix>[A-Za-z]+)_(?P<fingerprint>[0-9a-f]{32})' + re.escape(ARTIFACT_SUFFIX) + r'$'
)


class ArtifactStore:
    """
    File-system-backed artifact cache for one study output folder.

    Parameters
    ----------
    folder : Path
        Study output folder (created if missing)

    Examples
    --------
    >>> store = ArtifactStore(tmp_path)
    >>> path = store.put(fp, StageKind.EXTRACT, data)
    >>> store.has(fp)
    True
    """

    def __init__(self, folder: Union[str, Path]):
        self.folder = Path(folder)
        try:
            ensure_dir(self.folder)
        except OSError as e:
            raise StoreIOError(f"Cannot create output folder {self.folder}: {e}") from e
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    @staticmethod
    def file_name(fingerprint: str, kind: StageKind) -> str:
        """Deterministic artifact file name for a task."""
        return f"{StageKind(kind).prefix}_{fingerprint}{ARTIFACT_SUFFIX}"

    def path(self, fingerprint: str, kind: StageKind) -> Path:
        return self.folder / self.file_name(fingerprint, kind)

    def _find(self, fingerprint: str, kind: Optional[StageKind] = None) -> Optional[Path]:
        if kind is not None:
            path = self.path(fingerprint, kind)
            return path if path.exists() else None
        for path in self.folder.glob(f"*_{fingerprint}{ARTIFACT_SUFFIX}"):
            if _ARTIFACT_PATTERN.match(path.name):
                return path
        return None

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def has(self, fingerprint: str, kind: Optional[StageKind] = None) -> bool:
        """
        Check whether a committed artifact exists.

        Parameters
        ----------
        fingerprint : str
            Task fingerprint
        kind : StageKind, optional
            Stage kind; when given the check is a single path lookup

        Returns
        -------
        bool
            True if the task's artifact is committed
        """
        return self._find(fingerprint, kind) is not None

    def put(self, fingerprint: str, kind: StageKind, data: Any) -> Path:
        """
        Commit a task output atomically.

        The data is pickled to a hidden temporary file in the same folder,
        flushed to disk and renamed onto the final name. If the artifact is
        already committed the existing file is kept.

        Parameters
        ----------
        fingerprint : str
            Task fingerprint
        kind : StageKind
            Stage kind
        data : Any
            Picklable task output

        Returns
        -------
        Path
            Path to the committed artifact

        Raises
        ------
        StoreIOError
            If serialization or the file system fails
        """
        final_path = self.path(fingerprint, kind)
        if final_path.exists():
            return final_path

        tmp_path = self.folder / f".{final_path.name}.{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            with open(tmp_path, 'wb') as f:
                pickle.dump(data, f, protocol=pickle.HIGHEST_PROTOCOL)
                f.flush()
                os.fsync(f.fileno())
            with self._lock:
                if not final_path.exists():
                    os.replace(tmp_path, final_path)
        except (OSError, pickle.PicklingError, TypeError, AttributeError) as e:
            raise StoreIOError(f"Failed to commit {final_path.name}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        return final_path

    def get(self, fingerprint: str, kind: Optional[StageKind] = None) -> Path:
        """
        Get the path of a committed artifact.

        Raises
        ------
        NotFoundError
            If no artifact is committed for the fingerprint
        """
        path = self._find(fingerprint, kind)
        if path is None:
            raise NotFoundError(f"No artifact committed for fingerprint {fingerprint}")
        return path

    def load(self, fingerprint: str, kind: Optional[StageKind] = None) -> Any:
        """
        Load a committed artifact.

        Raises
        ------
        NotFoundError
            If no artifact is committed for the fingerprint
        StoreIOError
            If the file cannot be read or unpickled
        """
        path = self.get(fingerprint, kind)
        return load_artifact_file(path)

    # -------------------------------------------------------------------------
    # Inspection and housekeeping
    # -------------------------------------------------------------------------

    def list_artifacts(self) -> pd.DataFrame:
        """
        List committed artifacts.

        Returns
        -------
        pd.DataFrame
            Columns: file_name, kind, fingerprint, size_bytes
        """
        rows = []
        for path in sorted(self.folder.iterdir()):
            match = _ARTIFACT_PATTERN.match(path.name)
            if not match:
                continue
            try:
                kind = StageKind.from_prefix(match.group('prefix'))
            except ValueError:
                continue
            rows.append({
                'file_name': path.name,
                'kind': kind.value,
                'fingerprint': match.group('fingerprint'),
                'size_bytes': path.stat().st_size,
            })
        return pd.DataFrame(rows, columns=['file_name', 'kind', 'fingerprint', 'size_bytes'])

    def committed_fingerprints(self) -> set[str]:
        """Fingerprints of all committed artifacts."""
        return set(self.list_artifacts()['fingerprint'])

    def size(self) -> dict:
        """
        Get store size information.

        Returns
        -------
        dict
            Dictionary with file_count and total_mb
        """
        files = self.list_artifacts()
        total_bytes = int(files['size_bytes'].sum()) if len(files) else 0
        return {
            'file_count': len(files),
            'total_mb': round(total_bytes / (1024 * 1024), 2),
        }

    def clean_temporary_files(self) -> int:
        """
        Remove temporary files left behind by interrupted writes.

        Committed artifacts are never touched.

        Returns
        -------
        int
            Number of temporary files removed
        """
        count = 0
        for path in self.folder.glob(f".*{TEMP_SUFFIX}"):
            path.unlink()
            count += 1
        return count


def load_artifact_file(path: Union[str, Path]) -> Any:
    """Unpickle one artifact file."""
    try:
        with open(path, 'rb') as f:
            return pickle.load(f)
    except (OSError, pickle.UnpicklingError, EOFError) as e:
        raise StoreIOError(f"Failed to read artifact {Path(path).name}: {e}") from e
