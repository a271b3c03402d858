"""
Tests for spaudit/report.py.

Covers:
- tenant totals and clean/errored/personal counts
- top-N by storage with percentage of tenant total
- flattened CSV rows
"""
from spaudit.constants import BYTES_PER_GB, PRINCIPAL_EXTERNAL
from spaudit.models import Principal, ResourceDetail
from spaudit.report import detail_rows, summarize


def _detail(resource_id, used_gb=0, errored=False, personal=False, guests=0):
    detail = ResourceDetail(resource_id=resource_id, display_name=resource_id.title(),
                            url=f"https://contoso.sharepoint.com/sites/{resource_id}",
                            is_personal=personal)
    detail.storage_used_bytes = int(used_gb * BYTES_PER_GB)
    for i in range(guests):
        detail.add_principal(
            Principal(f"Guest {i}", f"g{i}_x.com#EXT#@contoso.onmicrosoft.com", PRINCIPAL_EXTERNAL), owner=False)
    detail.refresh_counts()
    if errored:
        detail.mark_error('quota: timeout')
    return detail


class TestSummarize:
    """Tests for summarize."""

    def test_totals(self):
        details = [
            _detail('a', used_gb=6, guests=2),
            _detail('b', used_gb=3, personal=True),
            _detail('c', errored=True),
        ]

        summary = summarize(details)

        assert summary['total_resources'] == 3
        assert summary['clean_resources'] == 2
        assert summary['errored_resources'] == 1
        assert summary['personal_resources'] == 1
        assert summary['resources_with_external_access'] == 1
        assert summary['total_external_principals'] == 2
        assert summary['total_storage_used_gb'] == 9.0

    def test_top_n_with_share_of_tenant(self):
        details = [_detail('small', used_gb=1), _detail('big', used_gb=3), _detail('empty')]

        top = summarize(details, top_n=2)['top_by_storage']

        assert [t['resource_id'] for t in top] == ['big', 'small']
        assert top[0]['pct_of_tenant'] == 75.0
        assert top[1]['pct_of_tenant'] == 25.0

    def test_empty(self):
        summary = summarize([])
        assert summary['total_resources'] == 0
        assert summary['top_by_storage'] == []

    def test_zero_storage_tenant(self):
        top = summarize([_detail('a')])['top_by_storage']
        assert top[0]['pct_of_tenant'] == 0.0


class TestDetailRows:
    """Tests for detail_rows."""

    def test_flattened(self):
        rows = detail_rows([_detail('a', used_gb=2, guests=1), _detail('b', errored=True)])

        assert rows[0]['resource_id'] == 'a'
        assert rows[0]['storage_used_gb'] == 2.0
        assert rows[0]['external_count'] == 1
        assert rows[0]['external_principals'] == 'g0_x.com#EXT#@contoso.onmicrosoft.com'
        assert rows[1]['errored'] is True
        assert rows[1]['errors'] == 'quota: timeout'
        assert all(isinstance(v, (str, int, float, bool)) for row in rows for v in row.values())
