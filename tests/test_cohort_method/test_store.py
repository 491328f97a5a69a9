"""Tests for cohort_method.store module."""
from __future__ import annotations

import threading

import pandas as pd
import pytest

from cohort_method.errors import NotFoundError, StoreIOError
from cohort_method.store import ArtifactStore, load_artifact_file
from cohort_method.tasks import StageKind


FP = '0123456789abcdef0123456789abcdef'
FP2 = 'fedcba9876543210fedcba9876543210'


class TestArtifactStore:
    """Tests for committing and loading artifacts."""

    def test_file_name(self):
        assert ArtifactStore.file_name(FP, StageKind.PROPENSITY) == f'Ps_{FP}.pkl'
        assert ArtifactStore.file_name(FP, 'outcome_model') == f'Om_{FP}.pkl'

    def test_creates_folder(self, tmp_path):
        folder = tmp_path / 'new' / 'store'
        ArtifactStore(folder)
        assert folder.is_dir()

    def test_put_and_load(self, output_folder):
        store = ArtifactStore(output_folder)
        df = pd.DataFrame({'row_id': [1, 2], 'propensity_score': [0.2, 0.8]})

        path = store.put(FP, StageKind.PROPENSITY, df)

        assert path.name == f'Ps_{FP}.pkl'
        assert store.has(FP, StageKind.PROPENSITY)
        assert store.has(FP)
        pd.testing.assert_frame_equal(store.load(FP, StageKind.PROPENSITY), df)

    def test_has_checks_kind(self, output_folder):
        store = ArtifactStore(output_folder)
        store.put(FP, StageKind.BALANCE, {'x': 1})
        assert not store.has(FP, StageKind.SHARED_BALANCE)

    def test_committed_file_never_rewritten(self, output_folder):
        store = ArtifactStore(output_folder)
        store.put(FP, StageKind.EXTRACT, {'version': 1})
        store.put(FP, StageKind.EXTRACT, {'version': 2})
        assert store.load(FP, StageKind.EXTRACT) == {'version': 1}

    def test_missing_artifact(self, output_folder):
        store = ArtifactStore(output_folder)
        assert not store.has(FP)
        with pytest.raises(NotFoundError):
            store.load(FP, StageKind.EXTRACT)

    def test_unpicklable_data(self, output_folder):
        store = ArtifactStore(output_folder)
        with pytest.raises(StoreIOError):
            store.put(FP, StageKind.EXTRACT, lambda x: x)
        assert not store.has(FP)
        assert list(output_folder.iterdir()) == []

    def test_corrupt_file(self, output_folder):
        (output_folder / f'CmData_{FP}.pkl').write_bytes(b'not a pickle')
        with pytest.raises(StoreIOError, match='Failed to read'):
            load_artifact_file(output_folder / f'CmData_{FP}.pkl')

    def test_concurrent_puts_commit_once(self, output_folder):
        store = ArtifactStore(output_folder)
        errors = []

        def worker(value):
            try:
                store.put(FP, StageKind.OUTCOME_MODEL, {'value': value})
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert [p.name for p in output_folder.iterdir()] == [f'Om_{FP}.pkl']
        assert store.load(FP, StageKind.OUTCOME_MODEL)['value'] in range(8)


class TestStoreInspection:
    """Tests for listing and housekeeping."""

    def test_list_artifacts(self, output_folder):
        store = ArtifactStore(output_folder)
        store.put(FP, StageKind.EXTRACT, {'a': 1})
        store.put(FP2, StageKind.OUTCOME_MODEL, {'b': 2})
        (output_folder / 'reference_table.json').write_text('[]')

        artifacts = store.list_artifacts()

        assert list(artifacts.columns) == ['file_name', 'kind', 'fingerprint', 'size_bytes']
        assert set(artifacts['kind']) == {'cohort_method_data', 'outcome_model'}
        assert store.committed_fingerprints() == {FP, FP2}

    def test_empty_store(self, output_folder):
        store = ArtifactStore(output_folder)
        assert store.list_artifacts().empty
        assert store.size() == {'file_count': 0, 'total_mb': 0.0}

    def test_clean_temporary_files(self, output_folder):
        store = ArtifactStore(output_folder)
        store.put(FP, StageKind.EXTRACT, {'a': 1})
        (output_folder / f'.Ps_{FP2}.pkl.abc123.tmp').write_bytes(b'partial')

        assert store.clean_temporary_files() == 1
        assert store.has(FP, StageKind.EXTRACT)
        assert not store.has(FP2)
