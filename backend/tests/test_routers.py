from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from mirrorsync.errors import BackendNotFoundError, SchemaError, SourceConnectionError
from mirrorsync.main import app


def _backend(**overrides):
    values = {"name": "acme", "db_url": "sqlite:///acme.db", "bucket_url": None, "attributes": {}}
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/api/health").json()["status"] == "ok"


def test_start_database_backup(client):
    with patch(
        "mirrorsync.routers.backup.require_backend", new_callable=AsyncMock
    ) as mock_backend, patch(
        "mirrorsync.routers.backup.start_backup", new_callable=AsyncMock
    ) as mock_start:
        mock_backend.return_value = _backend()
        mock_start.return_value = "acme_database_1700000000000"

        response = client.post("/api/backup", json={"type": "database", "backendName": "acme"})

    assert response.status_code == 200
    data = response.json()
    assert data["jobId"] == "acme_database_1700000000000"
    assert data["statusUrl"] == "/api/backup/status/acme_database_1700000000000"
    assert mock_start.call_args[0][1:] == ("database", "acme")


def test_backup_unknown_backend_is_404(client):
    with patch("mirrorsync.routers.backup.require_backend", new_callable=AsyncMock) as mock_backend:
        mock_backend.side_effect = BackendNotFoundError("Backend 'nope' not found")
        response = client.post("/api/backup", json={"type": "database", "backendName": "nope"})
    assert response.status_code == 404


def test_backup_files_without_bucket_is_400(client):
    with patch(
        "mirrorsync.routers.backup.require_backend", new_callable=AsyncMock
    ) as mock_backend, patch(
        "mirrorsync.routers.backup.start_backup", new_callable=AsyncMock
    ) as mock_start:
        mock_backend.return_value = _backend()
        response = client.post("/api/backup", json={"type": "files", "backendName": "acme"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Bucket URL not configured for this backend"
    mock_start.assert_not_called()


def test_backup_rejects_unknown_type(client):
    response = client.post("/api/backup", json={"type": "tapes", "backendName": "acme"})
    assert response.status_code == 422


def test_backup_status_not_found(client):
    with patch("mirrorsync.routers.backup.job_tracker.get_status", new_callable=AsyncMock) as mock_get:
        mock_get.return_value = None
        response = client.get("/api/backup/status/missing")
    assert response.status_code == 404


def test_mirror_table_missing_is_404(client):
    with patch(
        "mirrorsync.routers.backup.require_backend", new_callable=AsyncMock
    ) as mock_backend, patch(
        "mirrorsync.routers.backup.read_mirror_page", new_callable=AsyncMock
    ) as mock_read:
        mock_backend.return_value = _backend()
        mock_read.side_effect = SchemaError("Table 'backup_acme__x' not found")
        response = client.get("/api/backup/acme/tables/x")
    assert response.status_code == 404


def test_upload_database_requires_table_name(client):
    with patch("mirrorsync.routers.upload.require_backend", new_callable=AsyncMock) as mock_backend:
        mock_backend.return_value = _backend()
        response = client.post("/api/upload", json={"type": "database", "backendName": "acme"})
    assert response.status_code == 400


def test_start_upload(client):
    with patch(
        "mirrorsync.routers.upload.require_backend", new_callable=AsyncMock
    ) as mock_backend, patch(
        "mirrorsync.routers.upload.start_upload", new_callable=AsyncMock
    ) as mock_start:
        mock_backend.return_value = _backend()
        mock_start.return_value = "upload_acme_database_widgets_1"
        response = client.post(
            "/api/upload", json={"type": "database", "backendName": "acme", "tableName": "widgets"}
        )
    assert response.status_code == 200
    assert response.json()["jobId"] == "upload_acme_database_widgets_1"
    assert mock_start.call_args[0][1:] == ("database", "acme", "widgets")


def test_comparison_unreachable_source_is_502(client):
    with patch(
        "mirrorsync.routers.comparison.require_backend", new_callable=AsyncMock
    ) as mock_backend, patch(
        "mirrorsync.routers.comparison.source_connection"
    ) as mock_conn:
        mock_backend.return_value = _backend()
        mock_conn.return_value.__aenter__.side_effect = SourceConnectionError("Could not connect")
        response = client.get("/api/comparison/acme")
    assert response.status_code == 502


def test_auto_backup_status_and_restart(client):
    status = client.get("/api/auto-backup/status").json()
    assert status["database"]["enabled"] is False

    response = client.post(
        "/api/auto-backup/restart",
        json={"database_enabled": True, "database_schedule": "30 1 * * *"},
    )
    assert response.status_code == 200
    database = response.json()["status"]["database"]
    assert database["enabled"] is True
    assert database["schedule"] == "30 1 * * *"
    assert database["nextRun"] is not None

    bad = client.post("/api/auto-backup/restart", json={"files_enabled": True, "files_schedule": "whenever"})
    assert bad.status_code == 400


def test_automatic_backup_lists(client):
    jobs = [{"jobId": "acme_files_1", "type": "files", "isAutomatic": True}]
    with patch("mirrorsync.routers.auto_backup.job_tracker.list_statuses", new_callable=AsyncMock) as mock_list:
        mock_list.return_value = jobs
        response = client.get("/api/auto-backup/files?limit=10")

    assert response.status_code == 200
    assert response.json() == {"total": 1, "data": jobs}
    assert mock_list.call_args.kwargs == {"operation": "backup", "limit": 10, "kind": "files", "is_automatic": True}

    assert client.get("/api/auto-backup/status").status_code == 200
    assert client.get("/api/auto-backup/everything").status_code == 422
