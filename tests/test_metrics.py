"""Tests for StreamDrop Prometheus metrics."""

from prometheus_client import REGISTRY

from streamdrop import metrics


def _sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetrics:
    async def test_init_is_idempotent(self, client):
        counter = metrics.upload_operations_total
        metrics.init_metrics()
        assert metrics.upload_operations_total is counter

    async def test_put_object_counted(self, client):
        before = _sample(
            "streamdrop_upload_operations_total", operation="PutObject", status="200"
        )
        received = _sample("streamdrop_bytes_received_total")

        await client.put("/m.mp4", content=b"abcd", headers={"Content-Type": "video/mp4"})

        assert _sample(
            "streamdrop_upload_operations_total", operation="PutObject", status="200"
        ) == before + 1
        assert _sample("streamdrop_bytes_received_total") == received + 4

    async def test_chunks_and_combine_counted(self, client):
        written = _sample("streamdrop_chunks_written_total")
        combined = _sample("streamdrop_combine_outcomes_total", outcome="combined")

        await client.put(
            "/c.mp4",
            content=b"x",
            headers={
                "Content-Type": "video/mp4",
                "X-Upload-Id": "m1",
                "X-Part-Number": "0",
                "X-Total-Parts": "1",
            },
        )
        await client.post(
            "/combine",
            json={"key": "c.mp4", "uploadId": "m1", "contentType": "video/mp4", "totalChunks": 1},
        )

        assert _sample("streamdrop_chunks_written_total") == written + 1
        assert _sample("streamdrop_combine_outcomes_total", outcome="combined") == combined + 1

    async def test_bytes_sent_counted(self, client):
        await client.put("/s.mp4", content=b"0123456789", headers={"Content-Type": "video/mp4"})
        sent = _sample("streamdrop_bytes_sent_total")
        await client.get("/s.mp4", headers={"Range": "bytes=0-3"})
        assert _sample("streamdrop_bytes_sent_total") == sent + 4
