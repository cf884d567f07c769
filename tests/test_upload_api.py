"""上传接口的集成测试：申请地址、代理写入、完成登记、冲突、校验与版本回滚。"""

from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from app.packages.drive.crud.node import node_crud

ADMIN_EMAIL = "admin@example.com"


def _create_project(client: TestClient, headers: dict[str, str], **extra) -> dict:
    resp = client.post(
        "/api/v1/projects",
        headers=headers,
        json={"name": f"上传测试-{uuid.uuid4().hex[:6]}", **extra},
    )
    assert resp.status_code == 200
    return resp.json()["data"]


def _upload(
    client: TestClient,
    headers: dict[str, str],
    project_id: str,
    filename: str,
    content: bytes,
    *,
    parent_id: str | None = None,
    resolution: str | None = None,
):
    init_resp = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={
            "filename": filename,
            "fileSize": len(content),
            "fileType": "text/plain",
            "projectId": project_id,
            "parentId": parent_id,
            "resolution": resolution,
        },
    )
    if init_resp.status_code != 200:
        return init_resp
    plan = init_resp.json()["data"]

    put_resp = client.put(plan["url"], content=content, headers={"Content-Type": "text/plain"})
    assert put_resp.status_code == 200
    assert put_resp.json()["data"]["size"] == len(content)

    return client.post(
        "/api/v1/drive/upload/complete",
        headers=headers,
        json={
            "key": plan["key"],
            "filename": filename,
            "size": len(content),
            "commitToken": plan["commit_token"],
            "type": "text/plain",
            "projectId": project_id,
            "parentId": parent_id,
            "resolution": resolution,
        },
    )


def _blob_key(db, node_id: str) -> str:
    db.expire_all()
    return node_crud.get(db, node_id).blob_key


def test_upload_flow_creates_node_and_updates_quota(client: TestClient, admin, auth_headers, db):
    headers = auth_headers(admin)
    project = _create_project(client, headers, name="Team Alpha")

    resp = _upload(client, headers, project["id"], "hello.txt", b"hello world")
    assert resp.status_code == 200
    node = resp.json()["data"]
    assert node["version"] == 1
    assert node["size"] == 11
    assert node["has_blob"] is True
    assert "blob_key" not in node
    key = _blob_key(db, node["id"])
    assert key.startswith("projects/team_alpha/")
    assert key.endswith("_v1_hello.txt")

    listing = client.get("/api/v1/drive", headers=headers, params={"project": "Team Alpha"})
    assert listing.status_code == 200
    assert [item["name"] for item in listing.json()["data"]["nodes"]] == ["hello.txt"]

    quota = client.get(f"/api/v1/projects/{project['id']}/quota", headers=headers)
    assert quota.json()["data"]["current_storage_bytes"] == 11

    download = client.get(f"/api/v1/drive/nodes/{node['id']}/download", headers=headers)
    assert download.status_code == 200
    assert download.content == b"hello world"


def test_upload_into_folder_uses_folder_path_in_key(client: TestClient, admin, auth_headers, db):
    headers = auth_headers(admin)
    project = _create_project(client, headers)
    folder = client.post(
        "/api/v1/drive/folders",
        headers=headers,
        json={"projectId": project["id"], "parentId": None, "name": "manuals"},
    ).json()["data"]

    resp = _upload(client, headers, project["id"], "api.md", b"# API", parent_id=folder["id"])
    assert resp.status_code == 200
    assert "/manuals/" in _blob_key(db, resp.json()["data"]["id"])


def test_duplicate_upload_returns_conflict_then_new_version(client: TestClient, admin, auth_headers):
    headers = auth_headers(admin)
    project = _create_project(client, headers)
    first = _upload(client, headers, project["id"], "report.pdf", b"v1").json()["data"]

    conflict = _upload(client, headers, project["id"], "report.pdf", b"v2 data")
    assert conflict.status_code == 409
    body = conflict.json()["data"]
    assert body["conflict"] is True
    assert body["existing"]["latest_version"] == 1
    assert body["existing"]["owner"] == ADMIN_EMAIL

    updated = _upload(client, headers, project["id"], "report.pdf", b"v2 data", resolution="update")
    assert updated.status_code == 200
    assert updated.json()["data"]["version"] == 2

    versions = client.get("/api/v1/drive/versions", headers=headers, params={"nodeId": first["id"]})
    assert [item["version"] for item in versions.json()["data"]] == [2, 1]


def test_overwrite_replaces_blob_and_removes_old_object(client: TestClient, admin, auth_headers, blob_store, db):
    headers = auth_headers(admin)
    project = _create_project(client, headers)
    first = _upload(client, headers, project["id"], "a.txt", b"0123456789").json()["data"]
    first_key = _blob_key(db, first["id"])

    resp = _upload(client, headers, project["id"], "a.txt", b"abc", resolution="overwrite")
    assert resp.status_code == 200
    node = resp.json()["data"]
    assert node["id"] == first["id"]
    assert node["version"] == 1
    assert node["size"] == 3
    assert blob_store.head(first_key) is None
    assert blob_store.head(_blob_key(db, node["id"])).size == 3

    quota = client.get(f"/api/v1/projects/{project['id']}/quota", headers=headers)
    assert quota.json()["data"]["current_storage_bytes"] == 3


def test_complete_without_blob_is_rejected(client: TestClient, admin, auth_headers):
    headers = auth_headers(admin)
    project = _create_project(client, headers, name="Ghost Files")

    init = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "ghost.bin", "fileSize": 5, "projectId": project["id"]},
    ).json()["data"]

    resp = client.post(
        "/api/v1/drive/upload/complete",
        headers=headers,
        json={
            "key": init["key"],
            "commitToken": init["commit_token"],
            "filename": "ghost.bin",
            "size": 5,
            "projectId": project["id"],
        },
    )
    assert resp.status_code == 404
    listing = client.get("/api/v1/drive", headers=headers, params={"project": project["id"]})
    assert listing.json()["data"]["nodes"] == []


def test_complete_with_size_mismatch_is_rejected(client: TestClient, admin, auth_headers, blob_store):
    headers = auth_headers(admin)
    project = _create_project(client, headers, name="Size Check")
    init = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "a.bin", "fileSize": 5, "projectId": project["id"]},
    ).json()["data"]
    blob_store.put(init["key"], b"123")

    resp = client.post(
        "/api/v1/drive/upload/complete",
        headers=headers,
        json={
            "key": init["key"],
            "commitToken": init["commit_token"],
            "filename": "a.bin",
            "size": 5,
            "projectId": project["id"],
        },
    )
    assert resp.status_code == 404
    assert "大小不一致" in resp.json()["msg"]


def test_complete_rejects_key_not_issued_for_the_upload(client: TestClient, admin, auth_headers, blob_store):
    headers = auth_headers(admin)
    project = _create_project(client, headers, name="Mine")
    init = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "a.txt", "fileSize": 3, "projectId": project["id"]},
    ).json()["data"]
    blob_store.put("projects/mine/abc_v1_a.txt", b"abc")

    resp = client.post(
        "/api/v1/drive/upload/complete",
        headers=headers,
        json={
            "key": "projects/mine/abc_v1_a.txt",
            "commitToken": init["commit_token"],
            "filename": "a.txt",
            "size": 3,
            "projectId": project["id"],
        },
    )
    assert resp.status_code == 400

    missing_token = client.post(
        "/api/v1/drive/upload/complete",
        headers=headers,
        json={"key": init["key"], "filename": "a.txt", "size": 3, "projectId": project["id"]},
    )
    assert missing_token.status_code == 422


def test_proxy_upload_rejects_body_larger_than_planned(client: TestClient, admin, auth_headers, blob_store):
    headers = auth_headers(admin)
    project = _create_project(client, headers, max_storage_bytes=100)
    init = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "tiny.bin", "fileSize": 1, "projectId": project["id"]},
    ).json()["data"]

    resp = client.put(init["url"], content=b"x" * 5000)
    assert resp.status_code == 400
    assert blob_store.head(init["key"]) is None

    quota = client.get(f"/api/v1/projects/{project['id']}/quota", headers=headers)
    assert quota.json()["data"]["current_storage_bytes"] == 0


def test_complete_rejects_size_other_than_planned(client: TestClient, admin, auth_headers, blob_store):
    headers = auth_headers(admin)
    project = _create_project(client, headers, max_storage_bytes=100)
    init = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "tiny.bin", "fileSize": 1, "projectId": project["id"]},
    ).json()["data"]
    # 预签名直传时对象存储里可能已经是更大的文件
    blob_store.put(init["key"], b"x" * 5000)

    resp = client.post(
        "/api/v1/drive/upload/complete",
        headers=headers,
        json={
            "key": init["key"],
            "commitToken": init["commit_token"],
            "filename": "tiny.bin",
            "size": 5000,
            "projectId": project["id"],
        },
    )
    assert resp.status_code == 404
    quota = client.get(f"/api/v1/projects/{project['id']}/quota", headers=headers)
    assert quota.json()["data"]["current_storage_bytes"] == 0
    listing = client.get("/api/v1/drive", headers=headers, params={"project": project["id"]})
    assert listing.json()["data"]["nodes"] == []


def test_proxy_url_cannot_be_reused_after_commit(client: TestClient, admin, auth_headers):
    headers = auth_headers(admin)
    project = _create_project(client, headers)
    init = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "a.txt", "fileSize": 3, "projectId": project["id"]},
    ).json()["data"]
    assert client.put(init["url"], content=b"abc").status_code == 200
    body = {
        "key": init["key"],
        "commitToken": init["commit_token"],
        "filename": "a.txt",
        "size": 3,
        "projectId": project["id"],
    }
    node = client.post("/api/v1/drive/upload/complete", headers=headers, json=body).json()["data"]

    replay = client.put(init["url"], content=b"xyz")
    assert replay.status_code == 409
    again = client.post("/api/v1/drive/upload/complete", headers=headers, json=body)
    assert again.status_code == 409

    download = client.get(f"/api/v1/drive/nodes/{node['id']}/download", headers=headers)
    assert download.content == b"abc"


def test_proxy_upload_requires_valid_token(client: TestClient):
    resp = client.put("/api/v1/drive/upload/proxy", params={"t": "not-a-token"}, content=b"x")
    assert resp.status_code == 401


def test_upload_quota_exceeded(client: TestClient, admin, auth_headers):
    headers = auth_headers(admin)
    project = _create_project(client, headers, max_storage_bytes=10)

    resp = client.post(
        "/api/v1/drive/upload/init",
        headers=headers,
        json={"filename": "big.bin", "fileSize": 11, "projectId": project["id"]},
    )
    assert resp.status_code == 403
    assert resp.json()["data"]["max_storage_bytes"] == 10


def test_non_member_cannot_upload(client: TestClient, admin, make_user, auth_headers):
    outsider = make_user("outsider@example.com")
    project = _create_project(client, auth_headers(admin))

    resp = client.post(
        "/api/v1/drive/upload/init",
        headers=auth_headers(outsider),
        json={"filename": "x.txt", "fileSize": 1, "projectId": project["id"]},
    )
    assert resp.status_code == 403


def test_rollback_creates_new_latest_version(client: TestClient, admin, auth_headers, db):
    headers = auth_headers(admin)
    project = _create_project(client, headers)
    first = _upload(client, headers, project["id"], "cfg.yaml", b"a: 1").json()["data"]
    _upload(client, headers, project["id"], "cfg.yaml", b"a: 22", resolution="update")

    resp = client.post("/api/v1/drive/versions/rollback", headers=headers, json={"nodeId": first["id"]})
    assert resp.status_code == 200
    node = resp.json()["data"]
    assert node["version"] == 3
    assert _blob_key(db, node["id"]) != _blob_key(db, first["id"])

    download = client.get(f"/api/v1/drive/nodes/{node['id']}/download", headers=headers)
    assert download.content == b"a: 1"

    quota = client.get(f"/api/v1/projects/{project['id']}/quota", headers=headers)
    assert quota.json()["data"]["current_storage_bytes"] == 4 + 5 + 4


def test_requests_without_token_are_unauthorized(client: TestClient):
    resp = client.get("/api/v1/drive", params={"project": "anything"})
    assert resp.status_code == 401
