"""Tests for object GET/HEAD/PUT/DELETE handlers."""

import hashlib

from streamdrop.metadata import SessionState


async def _put(client, key="media/clip.mp4", body=b"0123456789", content_type="video/mp4"):
    return await client.put(f"/{key}", content=body, headers={"Content-Type": content_type})


class TestPutObject:
    async def test_put_returns_json(self, client):
        resp = await _put(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["message"] == "File uploaded successfully"
        assert data["key"] == "media/clip.mp4"
        assert data["size"] == 10
        assert data["etag"] == hashlib.md5(b"0123456789").hexdigest()
        assert resp.headers["etag"] == f'"{data["etag"]}"'

    async def test_put_overwrites(self, client):
        await _put(client, body=b"first")
        await _put(client, body=b"second")
        resp = await client.get("/media/clip.mp4")
        assert resp.content == b"second"

    async def test_put_rejects_content_type(self, client):
        resp = await _put(client, content_type="application/zip")
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "ValidationError"
        assert data["error"] is True
        assert "Invalid file type" in data["message"]
        assert data["requestId"] == resp.headers["x-request-id"]

    async def test_put_without_content_type_is_rejected(self, client):
        resp = await client.put("/media/raw.bin", content=b"abc")
        assert resp.status_code == 400

    async def test_put_too_large(self, client, config):
        body = b"x" * (config.uploads.max_upload_size + 1)
        resp = await _put(client, body=body)
        assert resp.status_code == 413
        assert resp.json()["code"] == "PayloadTooLarge"
        assert (await client.head("/media/clip.mp4")).status_code == 404

    async def test_put_reserved_prefix(self, client):
        resp = await _put(client, key="chunks/sneaky/u1/part0")
        assert resp.status_code == 400

    async def test_put_invalid_key(self, client):
        resp = await _put(client, key="a//b")
        assert resp.status_code == 400


class TestGetObject:
    async def test_get_full(self, client):
        await _put(client)
        resp = await client.get("/media/clip.mp4")
        assert resp.status_code == 200
        assert resp.content == b"0123456789"
        assert resp.headers["content-type"] == "video/mp4"
        assert resp.headers["content-length"] == "10"
        assert resp.headers["accept-ranges"] == "bytes"
        assert resp.headers["cache-control"] == "public, max-age=31536000"
        assert resp.headers["etag"].startswith('"')
        assert "last-modified" in resp.headers

    async def test_get_range(self, client):
        await _put(client)
        resp = await client.get("/media/clip.mp4", headers={"Range": "bytes=2-5"})
        assert resp.status_code == 206
        assert resp.content == b"2345"
        assert resp.headers["content-range"] == "bytes 2-5/10"
        assert resp.headers["content-length"] == "4"

    async def test_get_suffix_range(self, client):
        await _put(client)
        resp = await client.get("/media/clip.mp4", headers={"Range": "bytes=-3"})
        assert resp.status_code == 206
        assert resp.content == b"789"

    async def test_get_open_range(self, client):
        await _put(client)
        resp = await client.get("/media/clip.mp4", headers={"Range": "bytes=8-"})
        assert resp.status_code == 206
        assert resp.content == b"89"

    async def test_get_unsatisfiable_range(self, client):
        await _put(client)
        resp = await client.get("/media/clip.mp4", headers={"Range": "bytes=10-"})
        assert resp.status_code == 416
        assert resp.headers["content-range"] == "bytes */10"
        assert resp.json()["code"] == "UnsatisfiableRange"

    async def test_get_multi_range_serves_full(self, client):
        await _put(client)
        resp = await client.get("/media/clip.mp4", headers={"Range": "bytes=0-1,4-5"})
        assert resp.status_code == 200
        assert resp.content == b"0123456789"

    async def test_get_missing(self, client):
        resp = await client.get("/media/none.mp4")
        assert resp.status_code == 404
        data = resp.json()
        assert data["code"] == "NotFound"
        assert data["key"] == "media/none.mp4"


class TestHeadObject:
    async def test_head(self, client):
        await _put(client)
        resp = await client.head("/media/clip.mp4")
        assert resp.status_code == 200
        assert resp.content == b""
        assert resp.headers["content-length"] == "10"
        assert resp.headers["content-type"] == "video/mp4"

    async def test_head_range(self, client):
        await _put(client)
        resp = await client.head("/media/clip.mp4", headers={"Range": "bytes=0-3"})
        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 0-3/10"

    async def test_head_missing_has_no_body(self, client):
        resp = await client.head("/media/none.mp4")
        assert resp.status_code == 404
        assert resp.content == b""


class TestDeleteObject:
    async def test_delete(self, client):
        await _put(client)
        resp = await client.delete("/media/clip.mp4")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "File deleted successfully"}
        assert (await client.get("/media/clip.mp4")).status_code == 404

    async def test_delete_missing(self, client):
        resp = await client.delete("/media/none.mp4")
        assert resp.status_code == 404

    async def test_delete_cascades_to_upload(self, client, app):
        key = "media/combined.mp4"
        for i, part in enumerate([b"AB", b"CD"]):
            await client.put(
                f"/{key}",
                content=part,
                headers={
                    "Content-Type": "video/mp4",
                    "X-Upload-Id": "u-del",
                    "X-Part-Number": str(i),
                    "X-Total-Parts": "2",
                },
            )
        resp = await client.post(
            "/combine",
            json={"key": key, "uploadId": "u-del", "contentType": "video/mp4", "totalChunks": 2},
        )
        assert resp.status_code == 200

        # A part written straight to storage after the combine
        await app.state.chunks.put_chunk(key, "u-del", 5, 2, "video/mp4", b"late")

        resp = await client.delete(f"/{key}")
        assert resp.status_code == 200
        assert await app.state.chunks.list_chunk_keys() == []
        session = await app.state.session_store.get_session("u-del")
        assert session.state == SessionState.COMPLETE


class TestStreamingScenarios:
    async def test_range_on_larger_object(self, client):
        body = bytes(range(250)) * 4
        await _put(client, key="media/k.mp4", body=body)

        resp = await client.get("/media/k.mp4", headers={"Range": "bytes=0-99"})
        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 0-99/1000"
        assert resp.content == body[:100]

        resp = await client.get("/media/k.mp4", headers={"Range": "bytes=2000-"})
        assert resp.status_code == 416

    async def test_storage_failure_is_reported(self, client, storage, monkeypatch):
        async def broken_put_stream(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(storage, "put_stream", broken_put_stream)
        resp = await _put(client)
        assert resp.status_code == 500
        assert resp.json()["code"] == "StorageError"


class TestReservedPrefix:
    async def test_staged_parts_are_not_readable(self, client, app):
        await app.state.chunks.put_chunk("v.mp4", "u1", 0, 2, "video/mp4", b"part")
        part_key = app.state.chunks.chunk_key("v.mp4", "u1", 0)

        resp = await client.get(f"/{part_key}")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NotFound"
        assert (await client.head(f"/{part_key}")).status_code == 404
        assert await app.state.chunks.head_chunk("v.mp4", "u1", 0) is not None
