"""
Unit tests for the HTTP API (diffzip/routes/).

Tests run the backup inline (no scheduler in the testing config) against a
vault under tmp_path.
"""

from unittest.mock import MagicMock

import pytest

from conftest import set_mtime
from diffzip import scheduler as scheduler_module
from diffzip.models import INFO_FILE


T0 = 1_700_000_000_000


@pytest.fixture
def vault_files(app):
    root = app.extensions['diffzip']['vault'].root
    (root / 'note.md').write_text('first note')
    (root / 'notes').mkdir()
    (root / 'notes' / 'todo.md').write_text('buy milk')
    set_mtime(root / 'note.md', T0)
    set_mtime(root / 'notes' / 'todo.md', T0 + 1000)
    return root


@pytest.fixture
def backed_up(client, vault_files):
    response = client.post('/api/backup/run', json={'type': 'full'})
    assert response.status_code == 200
    return response.get_json()


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestBackupRoutes:
    """Test /api/backup endpoints."""

    def test_run_inline_without_scheduler(self, client, vault_files):
        response = client.post('/api/backup/run', json={})

        data = response.get_json()
        assert response.status_code == 200
        assert data['status'] == 'success'
        assert data['files_archived'] == 2
        assert (vault_files / 'backup' / data['archives'][0]).exists()
        assert (vault_files / 'backup' / INFO_FILE).exists()

    def test_run_invalid_type(self, client):
        response = client.post('/api/backup/run', json={'type': 'weekly'})

        assert response.status_code == 400
        assert 'Unknown backup type' in response.get_json()['error']

    def test_run_queued_with_scheduler(self, client):
        scheduler_module.scheduler = MagicMock()
        try:
            response = client.post('/api/backup/run', json={'type': 'only-new'})
        finally:
            scheduler_module.scheduler = None

        assert response.status_code == 202
        assert 'queued' in response.get_json()['message']

    def test_failed_run_returns_500(self, app, client, vault_files):
        app.config['BACKUP_DESTINATION'] = 'external'
        (vault_files.parent / 'blocker').write_text('not a folder')
        app.config['BACKUP_FOLDER_EXTERNAL'] = str(vault_files.parent / 'blocker')

        response = client.post('/api/backup/run')

        assert response.status_code == 500
        assert response.get_json()['status'] == 'failed'

    def test_status(self, client, backed_up):
        response = client.get('/api/backup/status')

        data = response.get_json()
        assert data['last_result']['status'] == 'success'
        assert any(event['key'] == 'backup' for event in data['progress'])

    def test_status_before_any_run(self, client):
        data = client.get('/api/backup/status').get_json()

        assert data['last_result'] is None
        assert data['progress'] == []


class TestRestoreRoutes:
    """Test /api/restore endpoints."""

    def test_list_files(self, client, backed_up):
        data = client.get('/api/restore/files').get_json()

        assert [f['path'] for f in data['files']] == ['notes/todo.md', 'note.md']
        assert data['files'][0]['history'][0]['zipName'] == backed_up['archives'][0]
        assert data['selectors'] == ['*', 'notes/*', 'note.md', 'notes/todo.md']

    def test_restore_file(self, client, backed_up, vault_files):
        response = client.post('/api/restore/file', json={
            'path': 'note.md',
            'archive_name': backed_up['archives'][0],
        })

        assert response.status_code == 200
        assert response.get_json()['restored_as'] == 'restored/note.md'
        assert (vault_files / 'restored' / 'note.md').read_text() == 'first note'

    def test_restore_file_with_suffix(self, client, backed_up, vault_files):
        archive = backed_up['archives'][0]

        response = client.post('/api/restore/file', json={
            'path': 'note.md',
            'archive_name': archive,
            'method': 'suffix',
        })

        assert response.get_json()['restored_as'] == f"note-{archive[:-4]}.md"

    @pytest.mark.parametrize('body', [
        {'archive_name': 'x.zip'},
        {'path': 'note.md'},
        {'path': 'note.md', 'archive_name': 'x.zip', 'method': 'elsewhere'},
    ])
    def test_restore_file_bad_request(self, client, body):
        assert client.post('/api/restore/file', json=body).status_code == 400

    def test_restore_file_unknown_revision(self, client, backed_up):
        response = client.post('/api/restore/file', json={'path': 'note.md', 'archive_name': '2000-1-1-0.zip'})

        assert response.status_code == 400
        assert 'no revision' in response.get_json()['error']

    def test_plan_requires_selectors(self, client):
        assert client.post('/api/restore/plan', json={}).status_code == 400

    def test_plan_invalid_cutoff(self, client, backed_up):
        response = client.post('/api/restore/plan', json={'selectors': {'*': 'yesterday'}})

        assert response.status_code == 400

    def test_plan_current_vault_is_empty(self, client, backed_up):
        data = client.post('/api/restore/plan', json={'selectors': {'*': 'latest'}}).get_json()

        assert data['files'] == 0
        assert data['skipped'] == 2

    def test_vault_restore_needs_confirmation(self, client, backed_up, vault_files):
        body = {'selectors': {'*': None}, 'prefix': 'copy'}

        response = client.post('/api/restore/vault', json=body)

        assert response.status_code == 409
        assert response.get_json()['files'] == 2
        assert not (vault_files / 'copy').exists()

    def test_vault_restore_confirmed(self, client, backed_up, vault_files):
        body = {'selectors': {'*': '2023-11-14T22:13:21.000Z'}, 'prefix': 'copy', 'confirm': True}

        response = client.post('/api/restore/vault', json=body)

        data = response.get_json()
        assert response.status_code == 200
        assert data['status'] == 'success'
        assert sorted(data['restored']) == ['copy/note.md', 'copy/notes/todo.md']

    def test_browse_folder(self, client, backed_up):
        data = client.get('/api/restore/folder?path=notes').get_json()

        assert data['path'] == 'notes'
        assert data['parent'] == ''
        assert data['files'] == ['notes/todo.md']
        assert data['timestamps'] == [T0 + 1000]

    def test_browse_root(self, client, backed_up):
        data = client.get('/api/restore/folder').get_json()

        assert data['parent'] is None
        assert data['folders'] == ['notes']
        assert data['files'] == ['note.md']

    def test_folder_restore(self, client, backed_up, vault_files):
        (vault_files / 'notes' / 'todo.md').write_text('changed')

        response = client.post('/api/restore/folder', json={
            'path': 'notes',
            'cutoff': T0 + 1000,
            'confirm': True,
        })

        assert response.status_code == 200
        assert response.get_json()['restored'] == ['notes/todo.md']
        assert (vault_files / 'notes' / 'todo.md').read_text() == 'buy milk'


class TestSettingsRoutes:
    """Test /api/settings endpoints."""

    def test_get_masks_secrets(self, app, client):
        app.config['S3_SECRET_KEY'] = 'very-secret'
        app.config['S3_ACCESS_KEY'] = 'AKIAEXAMPLE'

        data = client.get('/api/settings/').get_json()

        assert 'very-secret' not in str(data)
        assert data['S3_ACCESS_KEY'] == 'AKI***PLE'
        assert data['PASSPHRASE_OF_ZIP'] == ''

    def test_export_requires_passphrase(self, client):
        assert client.post('/api/settings/export', json={}).status_code == 400

    def test_export_and_import(self, app, client):
        app.config['MAX_FILES_IN_ZIP'] = 42
        uri = client.post('/api/settings/export', json={'passphrase': 'pw'}).get_json()['uri']
        app.config['MAX_FILES_IN_ZIP'] = 1

        response = client.post('/api/settings/import', json={'uri': uri, 'passphrase': 'pw'})

        assert response.status_code == 200
        assert app.config['MAX_FILES_IN_ZIP'] == 42

    def test_import_wrong_uri(self, client):
        response = client.post('/api/settings/import', json={'uri': 'https://x/?data=1', 'passphrase': 'pw'})

        assert response.status_code == 400

    def test_storage_test(self, client, mock_s3):
        body = {'access_key': 'test', 'secret_key': 'test', 'bucket_name': 'test-bucket'}

        data = client.post('/api/settings/storage/test', json=body).get_json()

        assert data['success'] is True
        assert data['bucket_exists'] is True

    def test_storage_test_missing_bucket(self, client, mock_s3):
        body = {'access_key': 'test', 'secret_key': 'test', 'bucket_name': 'other-bucket'}

        data = client.post('/api/settings/storage/test', json=body).get_json()

        assert data['bucket_exists'] is False

    def test_create_bucket(self, client, mock_s3):
        body = {'access_key': 'test', 'secret_key': 'test', 'bucket_name': 'created-bucket'}

        response = client.post('/api/settings/storage/bucket', json=body)

        assert response.status_code == 200
        assert mock_s3.Bucket('created-bucket') in mock_s3.buckets.all()

    def test_reset_history(self, client, backed_up, vault_files):
        response = client.post('/api/settings/reset-history')

        assert response.status_code == 200
        rerun = client.post('/api/backup/run', json={'type': 'full'}).get_json()
        assert rerun['files_archived'] == 2
