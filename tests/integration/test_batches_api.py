"""
Integration Tests — Batch API, SSE and WebSocket endpoints
══════════════════════════════════════════════════════════
The full FastAPI app (lifespan included) wired to the in-memory fakes.

HTTP tests use httpx.AsyncClient over ASGITransport; the WebSocket tests
use Starlette's TestClient, which runs the app in its own event loop.

Coverage targets:
  ✅ Upload → 202 with X-Batch-ID / Location, batch processed to COMPLETED
  ✅ Reads: list, status, documents, invoices, analysis (404 until analysed)
  ✅ Cancel → 200, second cancel → 409 INVALID_TRANSITION
  ✅ Error envelope: error_code, message, request_id
  ✅ Auth: 401 without / with an expired token, 403 for a viewer uploading
  ✅ Validation: 400 bad type, 413 oversized
  ✅ /health, /ready
  ✅ SSE stream closes with "done" for a terminal batch
  ✅ SSE: a change landing while the snapshot is read still reaches the stream
  ✅ WebSocket: policy close without token, subscribe ack with snapshot, errors
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from invoiceflow.domain.status import BatchStatus

PDF = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"


def _pdf_files(n: int = 1) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("files", (f"invoice-{i}.pdf", PDF, "application/pdf")) for i in range(n)]


async def _upload(client, auth_header, n: int = 1, sub: str = "alice"):
    return await client.post(
        "/api/v1/batches",
        files=_pdf_files(n),
        data={"name": "March invoices"},
        headers=auth_header(sub),
    )


@pytest.mark.integration
class TestUploadAndRead:

    async def test_upload_then_read_everything(self, async_client, app, auth_header):
        resp = await _upload(async_client, auth_header, n=2)

        assert resp.status_code == 202
        body = resp.json()
        batch_id = body["batch_id"]
        assert resp.headers["X-Batch-ID"] == batch_id
        assert resp.headers["Location"] == f"/api/v1/batches/{batch_id}"
        assert body["status"] == "CREATED"
        assert body["document_count"] == 2

        await app.state.pipeline.drain()

        status_resp = await async_client.get(f"/api/v1/batches/{batch_id}", headers=auth_header("vera"))
        assert status_resp.status_code == 200
        snapshot = status_resp.json()
        assert snapshot["status"] == BatchStatus.COMPLETED.value
        assert snapshot["is_terminal"] is True
        assert snapshot["progress"] == 100
        assert snapshot["created_by"] == "alice"

        docs = (await async_client.get(f"/api/v1/batches/{batch_id}/documents", headers=auth_header())).json()
        assert {d["status"] for d in docs} == {"PROCESSED"}
        assert all(d["has_text"] for d in docs)

        invoices = (await async_client.get(f"/api/v1/batches/{batch_id}/invoices", headers=auth_header())).json()
        assert len(invoices) == 2
        assert invoices[0]["invoice_number"] == "INV-100"
        assert invoices[0]["amount"] == "250.00"

        analysis = await async_client.get(f"/api/v1/batches/{batch_id}/analysis", headers=auth_header())
        assert analysis.status_code == 200
        assert analysis.json()["metadata"]["invoice_count"] == 2

        doc_resp = await async_client.get(f"/api/v1/documents/{docs[0]['document_id']}", headers=auth_header())
        assert doc_resp.json()["batch_id"] == batch_id

    async def test_list_batches_paginates(self, async_client, auth_header):
        for _ in range(3):
            await _upload(async_client, auth_header)

        resp = await async_client.get("/api/v1/batches?page=2&limit=2", headers=auth_header("vera"))

        body = resp.json()
        assert body["total"] == 3
        assert body["page"] == 2
        assert len(body["batches"]) == 1

    async def test_analysis_missing_until_analysed(self, async_client, auth_header, make_document):
        batch, _ = await make_document(1)

        resp = await async_client.get(f"/api/v1/batches/{batch.id}/analysis", headers=auth_header())

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NOT_FOUND"

    async def test_unknown_batch_uses_error_envelope(self, async_client, auth_header):
        resp = await async_client.get(
            "/api/v1/batches/missing",
            headers={**auth_header(), "X-Request-ID": "req-42"},
        )

        assert resp.status_code == 404
        body = resp.json()
        assert body["error_code"] == "NOT_FOUND"
        assert "missing" in body["message"]
        assert body["request_id"] == "req-42"
        assert resp.headers["X-Request-ID"] == "req-42"


@pytest.mark.integration
class TestCancel:

    async def test_cancel_then_conflict(self, async_client, auth_header, make_document):
        batch, _ = await make_document(2)

        first = await async_client.post(f"/api/v1/batches/{batch.id}/cancel", headers=auth_header())
        assert first.status_code == 200
        assert first.json()["status"] == BatchStatus.CANCELLED.value
        assert first.json()["failure_reason"] == "Cancelled by alice"

        second = await async_client.post(f"/api/v1/batches/{batch.id}/cancel", headers=auth_header())
        assert second.status_code == 409
        assert second.json()["error_code"] == "INVALID_TRANSITION"

    async def test_viewer_cannot_cancel(self, async_client, auth_header, make_document):
        batch, _ = await make_document(1)
        resp = await async_client.post(f"/api/v1/batches/{batch.id}/cancel", headers=auth_header("vera"))
        assert resp.status_code == 403


@pytest.mark.integration
@pytest.mark.auth
class TestAuth:

    async def test_missing_token(self, async_client):
        resp = await async_client.get("/api/v1/batches")
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "UNAUTHORIZED"

    async def test_expired_token(self, async_client, make_token):
        resp = await async_client.get(
            "/api/v1/batches", headers={"Authorization": f"Bearer {make_token(expired=True)}"},
        )
        assert resp.status_code == 401
        assert resp.json()["message"] == "Token has expired"

    async def test_viewer_cannot_upload(self, async_client, auth_header):
        resp = await _upload(async_client, auth_header, sub="vera")
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"


@pytest.mark.integration
@pytest.mark.ingestion
class TestUploadValidation:

    async def test_unsupported_type(self, async_client, auth_header):
        resp = await async_client.post(
            "/api/v1/batches",
            files=[("files", ("notes.txt", b"hello", "text/plain"))],
            data={"name": "b"},
            headers=auth_header(),
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "UNSUPPORTED_FILE_TYPE"

    async def test_oversized_file(self, async_client, auth_header, test_settings):
        big = PDF + b"x" * test_settings.max_file_size_bytes
        resp = await async_client.post(
            "/api/v1/batches",
            files=[("files", ("big.pdf", big, "application/pdf"))],
            data={"name": "b"},
            headers=auth_header(),
        )
        assert resp.status_code == 413
        assert resp.json()["error_code"] == "FILE_TOO_LARGE"

    async def test_missing_name_field(self, async_client, auth_header):
        resp = await async_client.post("/api/v1/batches", files=_pdf_files(), headers=auth_header())
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.integration
class TestOperations:

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.json() == {"status": "ok", "service": "invoiceflow"}

    async def test_ready(self, async_client):
        resp = await async_client.get("/ready")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["workers"]["status"] == "ok"


@pytest.mark.integration
class TestServerSentEvents:

    async def test_terminal_batch_stream_ends(self, async_client, auth_header, make_document):
        batch, _ = await make_document(1)
        await async_client.post(f"/api/v1/batches/{batch.id}/cancel", headers=auth_header())

        resp = await async_client.get(f"/api/v1/batches/{batch.id}/events", headers=auth_header("vera"))

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert "event: connected" in resp.text
        assert "event: done" in resp.text
        assert '"status": "CANCELLED"' in resp.text

    async def test_update_landing_during_snapshot_read_is_delivered(
        self, async_client, app, auth_header, make_document, repository, monkeypatch,
    ):
        batch, _ = await make_document(1)
        read_batch = repository.get_batch
        raced: list[str] = []

        async def read_then_cancel(batch_id):
            snapshot = await read_batch(batch_id)
            if not raced:
                raced.append(batch_id)
                # the batch goes terminal right after the stream read its snapshot
                await app.state.pipeline.cancel_batch(batch_id, "operator request")
            return snapshot

        monkeypatch.setattr(repository, "get_batch", read_then_cancel)

        resp = await async_client.get(f"/api/v1/batches/{batch.id}/events", headers=auth_header("vera"))

        assert raced == [batch.id]
        assert '"status": "CREATED"' in resp.text
        assert "event: batch_update" in resp.text
        assert "event: done" in resp.text
        assert '"status": "CANCELLED"' in resp.text

    async def test_unknown_batch_leaves_no_subscriber(self, async_client, app, auth_header):
        before = app.state.pipeline.gateway.subscriber_count

        resp = await async_client.get("/api/v1/batches/missing/events", headers=auth_header("vera"))

        assert resp.status_code == 404
        assert app.state.pipeline.gateway.subscriber_count == before


# ─────────────────────────────────────────────────────────────────────────────
# WebSocket
# ─────────────────────────────────────────────────────────────────────────────

def _wait_until_terminal(client: TestClient, batch_id: str, headers: dict) -> dict:
    for _ in range(500):
        body = client.get(f"/api/v1/batches/{batch_id}", headers=headers).json()
        if body["is_terminal"]:
            return body
        time.sleep(0.01)
    raise AssertionError(f"batch {batch_id} never reached a terminal state")


@pytest.mark.integration
class TestWebSocket:

    def test_missing_token_is_rejected(self, app):
        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/api/v1/ws/batches"):
                    pass
        assert exc_info.value.code == 1008

    def test_subscribe_flow(self, app, make_token, auth_header):
        with TestClient(app) as client:
            upload = client.post(
                "/api/v1/batches", files=_pdf_files(), data={"name": "ws"}, headers=auth_header(),
            )
            batch_id = upload.json()["batch_id"]
            _wait_until_terminal(client, batch_id, auth_header())

            with client.websocket_connect(f"/api/v1/ws/batches?token={make_token('vera')}") as ws:
                ws.send_json({"action": "subscribe", "batch_id": batch_id})
                ack = ws.receive_json()
                assert ack["type"] == "subscribed"
                assert ack["data"]["status"] == BatchStatus.COMPLETED.value
                assert ack["data"]["progress"] == 100

                ws.send_json({"action": "subscribe", "batch_id": "missing"})
                error = ws.receive_json()
                assert error["type"] == "error"
                assert "missing" in error["message"]

                ws.send_text("not json")
                assert ws.receive_json()["type"] == "error"

                ws.send_json({"action": "subscribe", "batch_id": "*"})
                assert ws.receive_json() == {"type": "subscribed", "batch_id": "*"}

                ws.send_json({"action": "unsubscribe", "batch_id": batch_id})
                assert ws.receive_json() == {"type": "unsubscribed", "batch_id": batch_id}

    def test_live_updates_reach_broadcast_subscriber(self, app, make_token, auth_header):
        with TestClient(app) as client:
            with client.websocket_connect(f"/api/v1/ws/batches?token={make_token()}") as ws:
                ws.send_json({"action": "subscribe", "batch_id": "*"})
                assert ws.receive_json()["type"] == "subscribed"

                upload = client.post(
                    "/api/v1/batches", files=_pdf_files(), data={"name": "live"}, headers=auth_header(),
                )
                batch_id = upload.json()["batch_id"]

                statuses = []
                while not statuses or statuses[-1] != BatchStatus.COMPLETED.value:
                    message = ws.receive_json()
                    if message["type"] == "batch_update":
                        assert message["data"]["batch_id"] == batch_id
                        statuses.append(message["data"]["status"])

                assert statuses[0] == BatchStatus.CREATED.value
