import hashlib
import os

API = "/api/v1/upload"


def initiate(client, headers, file_size, chunk_size=None, **extra):
    body = {"fileName": "mission.zip", "fileSize": file_size, **extra}
    if chunk_size is not None:
        body["chunkSize"] = chunk_size
    return client.post(f"{API}/initiate", json=body, headers=headers)


def send_chunk(client, headers, upload_id, index, payload, checksum=None):
    data = {"uploadId": upload_id, "chunkIndex": str(index)}
    if checksum is not None:
        data["checksum"] = checksum
    return client.post(
        f"{API}/chunk",
        data=data,
        files={"chunk": (f"chunk_{index}", payload, "application/octet-stream")},
        headers=headers,
    )


def test_full_upload_flow(client, auth_headers):
    content = os.urandom(2500)
    resp = initiate(client, auth_headers, len(content), chunk_size=1000, mimeType="application/zip", metadata={"site": 4})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    upload_id = body["data"]["uploadId"]
    assert body["data"]["chunkSize"] == 1000
    assert body["data"]["totalChunks"] == 3

    for index in (2, 0, 1):
        payload = content[index * 1000:(index + 1) * 1000]
        resp = send_chunk(client, auth_headers, upload_id, index, payload, hashlib.md5(payload).hexdigest())
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["chunkIndex"] == index

    data = resp.json()["data"]
    assert data["uploadedChunks"] == 3
    assert data["totalChunks"] == 3
    assert data["progress"] == 100

    resp = client.post(f"{API}/complete", json={"uploadId": upload_id}, headers=auth_headers)
    assert resp.status_code == 200
    result = resp.json()["data"]
    assert result["fileName"] == "mission.zip"
    assert result["fileSize"] == 2500
    with open(result["finalPath"], "rb") as f:
        assert f.read() == content

    status = client.get(f"{API}/status/{upload_id}", headers=auth_headers).json()["data"]
    assert status["status"] == "completed"
    assert status["missingChunks"] == []
    assert status["metadata"] == {"site": 4}
    assert status["mimeType"] == "application/zip"


def test_status_query_form_and_missing_chunks(client, auth_headers):
    upload_id = initiate(client, auth_headers, 500, chunk_size=100).json()["data"]["uploadId"]
    for index in (0, 2, 4):
        send_chunk(client, auth_headers, upload_id, index, b"z" * 100)

    status = client.get(f"{API}/status", params={"uploadId": upload_id}, headers=auth_headers).json()
    assert status["data"]["uploadedChunks"] == 3
    assert status["data"]["progress"] == 60
    assert status["data"]["missingChunks"] == [1, 3]

    missing = client.get(f"{API}/missing/{upload_id}", headers=auth_headers).json()
    assert missing["data"] == {"uploadId": upload_id, "missingChunks": [1, 3]}


def test_retried_chunk_reports_already_uploaded(client, auth_headers):
    upload_id = initiate(client, auth_headers, 200, chunk_size=100).json()["data"]["uploadId"]

    send_chunk(client, auth_headers, upload_id, 0, b"a" * 100)
    resp = send_chunk(client, auth_headers, upload_id, 0, b"a" * 100)

    data = resp.json()["data"]
    assert data["alreadyUploaded"] is True
    assert data["uploadedChunks"] == 1


def test_invalid_file_size_envelope(client, auth_headers):
    resp = initiate(client, auth_headers, 0)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "INVALID_ARGUMENT"
    assert "fileSize" in body["error"]["message"]


def test_missing_body_field_is_invalid_argument(client, auth_headers):
    resp = client.post(f"{API}/initiate", json={"fileSize": 10}, headers=auth_headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_ARGUMENT"


def test_chunk_without_file_is_rejected(client, auth_headers):
    upload_id = initiate(client, auth_headers, 100).json()["data"]["uploadId"]

    resp = client.post(
        f"{API}/chunk",
        data={"uploadId": upload_id, "chunkIndex": "0"},
        headers=auth_headers,
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_ARGUMENT"


def test_out_of_range_chunk_index(client, auth_headers):
    upload_id = initiate(client, auth_headers, 100, chunk_size=100).json()["data"]["uploadId"]

    resp = send_chunk(client, auth_headers, upload_id, 5, b"x" * 100)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_ARGUMENT"


def test_checksum_mismatch_envelope(client, auth_headers):
    upload_id = initiate(client, auth_headers, 100, chunk_size=100).json()["data"]["uploadId"]

    resp = send_chunk(client, auth_headers, upload_id, 0, b"x" * 100, hashlib.md5(b"y").hexdigest())

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "CHECKSUM_MISMATCH"
    status = client.get(f"{API}/status/{upload_id}", headers=auth_headers).json()["data"]
    assert status["uploadedChunks"] == 0


def test_complete_too_early_reports_shortfall(client, auth_headers):
    upload_id = initiate(client, auth_headers, 300, chunk_size=100).json()["data"]["uploadId"]
    send_chunk(client, auth_headers, upload_id, 1, b"x" * 100)

    resp = client.post(f"{API}/complete", json={"uploadId": upload_id}, headers=auth_headers)

    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "INCOMPLETE_UPLOAD"
    assert error["details"]["missingChunks"] == [0, 2]
    assert "1/3" in error["message"]


def test_cancel_then_chunk_is_invalid_state(client, auth_headers):
    upload_id = initiate(client, auth_headers, 200, chunk_size=100).json()["data"]["uploadId"]

    resp = client.post(f"{API}/cancel", json={"uploadId": upload_id}, headers=auth_headers)
    assert resp.json() == {"success": True, "data": {"uploadId": upload_id, "status": "cancelled"}}

    resp = send_chunk(client, auth_headers, upload_id, 0, b"x" * 100)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INVALID_STATE"

    resp = client.post(f"{API}/complete", json={"uploadId": upload_id}, headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INVALID_STATE"


def test_unknown_upload_is_not_found(client, auth_headers):
    resp = client.get(f"{API}/status/does-not-exist", headers=auth_headers)

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_requires_bearer_token(client):
    resp = initiate(client, {}, 100)

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"


def test_refresh_token_is_rejected(client, token_for):
    headers = {"Authorization": f"Bearer {token_for(token_type='refresh')}"}
    resp = initiate(client, headers, 100)

    assert resp.status_code == 401


def test_uploads_are_scoped_to_owner(client, auth_headers, token_for):
    upload_id = initiate(client, auth_headers, 100).json()["data"]["uploadId"]
    intruder = {"Authorization": f"Bearer {token_for('someone-else')}"}

    assert client.get(f"{API}/status/{upload_id}", headers=intruder).status_code == 404
    assert client.post(f"{API}/cancel", json={"uploadId": upload_id}, headers=intruder).status_code == 404


def test_list_sessions(client, auth_headers, token_for):
    first = initiate(client, auth_headers, 100).json()["data"]["uploadId"]
    second = initiate(client, auth_headers, 100).json()["data"]["uploadId"]
    client.post(f"{API}/cancel", json={"uploadId": first}, headers=auth_headers)
    other = {"Authorization": f"Bearer {token_for('someone-else')}"}
    initiate(client, other, 100)

    listing = client.get(f"{API}/sessions", headers=auth_headers).json()["data"]
    assert listing["total"] == 2
    assert {item["uploadId"] for item in listing["items"]} == {first, second}

    cancelled = client.get(f"{API}/sessions", params={"status": "cancelled"}, headers=auth_headers).json()["data"]
    assert [item["uploadId"] for item in cancelled["items"]] == [first]


def test_progress_stream_for_finished_upload(client, auth_headers):
    upload_id = initiate(client, auth_headers, 100, chunk_size=100).json()["data"]["uploadId"]
    send_chunk(client, auth_headers, upload_id, 0, b"x" * 100)
    client.post(f"{API}/complete", json={"uploadId": upload_id}, headers=auth_headers)

    resp = client.get(f"{API}/progress/{upload_id}", headers=auth_headers)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert "event: progress" in resp.text
    assert '"status": "completed"' in resp.text
    assert '"progress": 100.0' in resp.text


def test_request_id_header(client):
    resp = client.get("/api/v1/health")

    assert resp.status_code == 200
    assert len(resp.headers["X-Request-ID"]) == 8
