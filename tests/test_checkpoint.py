"""
Tests for spaudit/checkpoint.py.

Covers:
- atomic save / load round trip of the checkpoint file format
- nested rosters dropped from saved records
- corrupt or missing files
- disabled manager never touching disk
- periodic saves and resume filtering
"""
import json
import os
import stat
from unittest.mock import patch

import pytest

from spaudit.checkpoint import CheckpointManager
from spaudit.models import CheckpointState, Principal, Resource, ResourceDetail


def _detail(resource_id, used=0, errored=False):
    detail = ResourceDetail(resource_id=resource_id, display_name=resource_id.upper(),
                            url=f"https://contoso.sharepoint.com/sites/{resource_id}")
    detail.storage_used_bytes = used
    detail.add_principal(Principal('Bob', 'bob@contoso.com', role='read'), owner=False)
    detail.refresh_counts()
    if errored:
        detail.mark_error('quota: timeout')
    return detail


@pytest.fixture
def checkpoint_path(tmp_path):
    return str(tmp_path / 'checkpoint.json')


class TestSaveLoad:
    """Tests for CheckpointManager.save and load."""

    def test_file_format(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        manager.record(_detail('a', used=42))
        manager.set_continuation_token('https://graph.microsoft.com/v1.0/sites/delta?token=t')
        manager.save()

        with open(checkpoint_path) as f:
            data = json.load(f)

        assert data['processedResourceIds'] == ['a']
        assert data['continuationToken'].endswith('token=t')
        assert 'updatedAt' in data
        saved = data['partialResults'][0]
        assert saved['storage_used_bytes'] == 42
        assert saved['members_count'] == 1
        assert 'members' not in saved
        assert 'owners' not in saved

    def test_round_trip(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        manager.record(_detail('a', used=1))
        manager.record(_detail('b', errored=True))
        manager.save()

        state = CheckpointManager(checkpoint_path).load()

        assert state.processed_resource_ids == {'a', 'b'}
        by_id = {d.resource_id: d for d in state.partial_results}
        assert by_id['a'].storage_used_bytes == 1
        assert by_id['a'].members_count == 1
        assert by_id['a'].members == []
        assert by_id['b'].errored
        assert by_id['b'].errors == ['quota: timeout']

    def test_owner_only_permissions(self, checkpoint_path):
        CheckpointManager(checkpoint_path).save(CheckpointState())

        mode = stat.S_IMODE(os.stat(checkpoint_path).st_mode)
        assert mode == 0o600

    def test_no_temp_files_left(self, tmp_path, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        manager.save()
        manager.save()

        assert os.listdir(tmp_path) == ['checkpoint.json']

    def test_failed_write_keeps_previous_file(self, tmp_path, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        manager.record(_detail('a'))
        manager.save()

        manager.record(_detail('b'))
        with patch('spaudit.checkpoint.os.replace', side_effect=OSError('disk full')):
            with pytest.raises(OSError):
                manager.save()

        state = CheckpointManager(checkpoint_path).load()
        assert state.processed_resource_ids == {'a'}
        assert os.listdir(tmp_path) == ['checkpoint.json']

    def test_missing_file_is_empty(self, checkpoint_path):
        assert CheckpointManager(checkpoint_path).load().is_empty

    def test_corrupt_file_is_empty(self, checkpoint_path):
        with open(checkpoint_path, 'w') as f:
            f.write('{not json')

        assert CheckpointManager(checkpoint_path).load().is_empty

    def test_disabled_manager_does_nothing(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path, enabled=False)
        manager.record(_detail('a'))
        manager.save()

        assert not os.path.exists(checkpoint_path)
        assert manager.state.is_empty

    def test_save_every(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path, save_every=2)

        manager.record(_detail('a'))
        assert not os.path.exists(checkpoint_path)
        manager.record(_detail('b'))

        with open(checkpoint_path) as f:
            assert json.load(f)['processedResourceIds'] == ['a', 'b']

    def test_legacy_delta_link_key(self):
        state = CheckpointState.from_dict({'processedResourceIds': [], 'deltaLink': 'link'})
        assert state.continuation_token == 'link'


class TestResume:
    """Tests for resume filtering and merging."""

    def test_pending_excludes_processed(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        manager.record(_detail('a'))
        manager.record(_detail('b'))
        resources = [Resource(i) for i in ('a', 'b', 'c', 'd')]

        assert [r.id for r in manager.pending(resources)] == ['c', 'd']

    def test_merged_results_cover_every_resource(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        previous = [_detail('a'), _detail('b', errored=True)]

        merged = manager.merged_results([_detail('c'), _detail('b')], previous)

        by_id = {d.resource_id: d for d in merged}
        assert set(by_id) == {'a', 'b', 'c'}
        assert not by_id['b'].errored

    def test_forget_drops_removed_resources(self, checkpoint_path):
        manager = CheckpointManager(checkpoint_path)
        manager.record(_detail('a'))
        manager.record(_detail('b'))

        assert manager.forget(['a', 'zz']) == 1
        assert manager.state.processed_resource_ids == {'b'}
        assert [d.resource_id for d in manager.state.partial_results] == ['b']
        assert [r.id for r in manager.pending([Resource('a'), Resource('b')])] == ['a']
