"""HTTP glue tests over httpx against the FastAPI app (lifespan not run; services injected)."""
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fileflow.config import settings
from fileflow.main import app

HEADERS = {"X-User-Id": "u1"}


@pytest_asyncio.fixture
async def client(services):
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def test_missing_principal_is_unauthorized(client):
    resp = await client.get("/api/quota")
    assert resp.status_code == 401


async def test_quota_usage_is_camel_case(client):
    resp = await client.get("/api/quota", headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["totalQuota"] == 1000
    assert body["usedStorage"] == 0
    assert body["usagePercentage"] == 0.0


async def test_upload_then_download(client):
    resp = await client.post(
        "/api/files/upload", headers=HEADERS,
        files={"file": ("notes.txt", b"some notes", "text/plain")},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["originalName"] == "notes.txt"
    assert body["sizeBytes"] == 10

    download = await client.get(f"/api/files/{body['id']}/download", headers=HEADERS)
    assert download.status_code == 200
    assert download.content == b"some notes"

    url = (await client.get(f"/api/files/{body['id']}/url", headers=HEADERS)).json()["url"]
    via_url = await client.get(url, headers=HEADERS)
    assert via_url.content == b"some notes"
    assert (await client.get(url, headers={"X-User-Id": "u2"})).status_code == 404


async def test_quota_exceeded_maps_to_507(client):
    resp = await client.post(
        "/api/files/upload", headers=HEADERS,
        files={"file": ("big.bin", b"x" * 1001, "application/octet-stream")},
    )
    assert resp.status_code == 507
    assert resp.json()["error"] == "QuotaExceededError"


async def test_chunked_upload_over_http(client):
    start = await client.post(
        "/api/files/uploads", headers=HEADERS,
        json={"filename": "two.bin", "totalSize": 4, "totalChunks": 2},
    )
    assert start.status_code == 201
    upload_id = start.json()["uploadId"]

    early = await client.post(f"/api/files/uploads/{upload_id}/complete", headers=HEADERS)
    assert early.status_code == 400
    assert early.json()["error"] == "InvalidChunk"

    for n, part in [(1, b"cd"), (0, b"ab")]:
        ack = await client.put(f"/api/files/uploads/{upload_id}/chunks/{n}", headers=HEADERS, content=part)
        assert ack.status_code == 200
    assert ack.json()["receivedChunks"] == 2

    done = await client.post(f"/api/files/uploads/{upload_id}/complete", headers=HEADERS)
    assert done.status_code == 201
    assert done.json()["sizeBytes"] == 4


async def test_unknown_file_is_404(client):
    resp = await client.get("/api/files/00000000-0000-0000-0000-000000000000", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFound"


async def test_folders_and_search(client):
    folder = await client.post("/api/folders", headers=HEADERS, json={"name": "Projects"})
    assert folder.status_code == 201
    folder_id = folder.json()["id"]
    await client.post(
        "/api/files/upload", headers=HEADERS,
        files={"file": ("project plan.txt", b"plan", "text/plain")},
        data={"parentFolderId": folder_id},
    )

    listed = await client.get(f"/api/folders/{folder_id}/files", headers=HEADERS)
    assert [f["originalName"] for f in listed.json()] == ["project plan.txt"]

    found = await client.get("/api/search", headers=HEADERS, params={"q": "project"})
    body = found.json()
    assert [f["originalName"] for f in body["files"]] == ["project plan.txt"]
    assert [f["name"] for f in body["folders"]] == ["Projects"]
    assert body["hasMore"] is False

    bad = await client.get("/api/search", headers=HEADERS, params={"q": "x", "size": 500})
    assert bad.status_code == 400


async def test_subscriptions_and_stats(client):
    sub = await client.post(
        "/api/notifications/subscriptions", headers=HEADERS,
        json={"itemId": "folder-1", "itemType": "FOLDER"},
    )
    assert sub.status_code == 201
    stats = (await client.get("/api/notifications/stats", headers=HEADERS)).json()
    assert stats["activeSubscriptions"] == 1

    removed = await client.post(
        "/api/notifications/subscriptions/remove", headers=HEADERS,
        json={"itemId": "folder-1", "itemType": "FOLDER"},
    )
    assert removed.json()["removed"] is True


async def test_quota_admin_requires_operator_token(client, monkeypatch):
    resp = await client.put("/api/quota/users/u1/base", headers=HEADERS, json={"newQuota": 5000})
    assert resp.status_code == 403

    monkeypatch.setattr(settings, "OPERATOR_TOKEN", "op-secret")
    resp = await client.post(
        "/api/quota/users/u1/extensions", headers={**HEADERS, "X-Operator-Token": "guess"},
        json={"additionalSpace": 500, "expiryDate": "2099-01-01T00:00:00Z"},
    )
    assert resp.status_code == 403
    usage = await client.get("/api/quota", headers=HEADERS)
    assert usage.json()["totalQuota"] == 1000


async def test_operator_sets_base_quota(client, monkeypatch):
    monkeypatch.setattr(settings, "OPERATOR_TOKEN", "op-secret")
    operator = {"X-Operator-Token": "op-secret"}

    resp = await client.put("/api/quota/users/u2/base", headers=operator, json={"newQuota": 5000})
    assert resp.status_code == 200
    assert resp.json()["baseQuota"] == 5000

    resp = await client.put("/api/quota/users/u2/base", headers=operator, json={"newQuota": 1})
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationFault"
