"""
Integration Tests — upload → workers → owner entity
═══════════════════════════════════════════════════
End-to-end through the HTTP surface. After each upload the test drains
the ledger in-process and then inspects the owner entity row, the job
ledger and the Cache Store.
"""

from __future__ import annotations

import io
from unittest.mock import patch

import pytest

from processor.core.errors import TransientProcessingError
from processor.processing.text_worker import TextWorker
from tests.conftest import make_docx


async def _upload(async_client, content: bytes, filename: str, owner: str = "page-1") -> dict:
    response = await async_client.post(
        "/upload",
        files=[("file", (filename, io.BytesIO(content), "application/octet-stream"))],
        data={"ownerEntityId": owner},
    )
    assert response.status_code == 202, response.text
    return response.json()


@pytest.mark.integration
class TestProcessingFlow:

    async def test_text_file_lands_on_owner(self, async_client, runtime, sample_txt_bytes):
        await _upload(async_client, sample_txt_bytes, "notes.txt")
        await runtime.runner.drain()

        owner = await runtime.owners.get("page-1")
        assert owner.processing_status == "completed"
        assert owner.extraction_method == "text"
        assert "It has multiple lines." in owner.content

    async def test_pdf_text_layer(self, async_client, runtime, sample_pdf_bytes):
        await _upload(async_client, sample_pdf_bytes, "report.pdf")
        await runtime.runner.drain()

        owner = await runtime.owners.get("page-1")
        assert owner.processing_status == "completed"
        assert "Quarterly report" in owner.content
        assert owner.extraction_metadata["pageCount"] == 1

    async def test_word_document(self, async_client, runtime):
        data = make_docx(["Agenda", "Budget review"], table=[["Item", "Cost"], ["Laptops", "1200"]])
        await _upload(async_client, data, "agenda.docx")
        await runtime.runner.drain()

        owner = await runtime.owners.get("page-1")
        assert owner.processing_status == "completed"
        assert "Budget review" in owner.content
        assert "Laptops\t1200" in owner.content

    async def test_scanned_pdf_falls_back_to_visual(self, async_client, runtime, scanned_pdf_bytes):
        body = await _upload(async_client, scanned_pdf_bytes, "scan.pdf")
        await runtime.runner.drain()

        owner = await runtime.owners.get("page-1")
        assert owner.processing_status == "visual"
        assert owner.content_hash == body["contentHash"]
        # The original stays downloadable for visual display.
        original = await async_client.get(f"/cache/{body['contentHash']}/original")
        assert original.status_code == 200

    async def test_image_is_visual_with_presets(self, async_client, runtime, sample_png_bytes):
        body = await _upload(async_client, sample_png_bytes, "photo.png")
        await runtime.runner.drain()

        owner = await runtime.owners.get("page-1")
        assert owner.processing_status == "visual"
        for preset in ("thumbnail", "ai-chat"):
            response = await async_client.get(f"/cache/{body['contentHash']}/{preset}")
            assert response.status_code == 200, preset

    async def test_same_bytes_two_owners_both_complete(self, async_client, runtime, sample_txt_bytes):
        first = await _upload(async_client, sample_txt_bytes, "notes.txt", owner="page-1")
        second = await _upload(async_client, sample_txt_bytes, "notes.txt", owner="page-2")
        assert second["deduplicated"] is True

        await runtime.runner.drain()

        for owner_id in ("page-1", "page-2"):
            owner = await runtime.owners.get(owner_id)
            assert owner.processing_status == "completed", owner_id
            assert owner.content_hash == first["contentHash"]

    async def test_office_type_without_extractor_completes_empty(self, async_client, runtime):
        body = await async_client.post(
            "/upload",
            files=[("file", ("sheet.bin", io.BytesIO(b"\x01\x02 spreadsheet bytes"), "application/vnd.ms-excel"))],
            data={"ownerEntityId": "page-3"},
        )
        assert body.status_code == 202
        assert body.json()["mimeType"] == "application/vnd.ms-excel"

        await runtime.runner.drain()

        owner = await runtime.owners.get("page-3")
        assert owner.processing_status == "completed"
        assert owner.extraction_method == "none"

    async def test_transient_failure_recovers(self, async_client, runtime, sample_txt_bytes):
        body = await _upload(async_client, sample_txt_bytes, "notes.txt")
        real_extract = TextWorker.extract
        calls = {"n": 0}

        async def flaky(self, content_hash, mime_type):
            calls["n"] += 1
            if calls["n"] == 1:
                raise TransientProcessingError("temporary read error")
            return await real_extract(self, content_hash, mime_type)

        with patch.object(TextWorker, "extract", flaky):
            await runtime.runner.drain()

        job = await async_client.get(f"/jobs/{body['jobsEnqueued'][0]['jobId']}")
        assert job.json()["state"] == "completed"
        assert job.json()["attempts"] == 2
        assert (await runtime.owners.get("page-1")).processing_status == "completed"

    async def test_permanent_failure_marks_owner_failed(self, async_client, runtime):
        await _upload(async_client, b"%PDF-1.7\n" + b"\x00" * 64, "broken.pdf")
        await runtime.runner.drain()

        owner = await runtime.owners.get("page-1")
        assert owner.processing_status == "failed"
        assert owner.processing_error

    async def test_reupload_after_failure_retries_processing(self, async_client, runtime, sample_txt_bytes):
        body = await _upload(async_client, sample_txt_bytes, "notes.txt")
        with patch.object(TextWorker, "extract", side_effect=TransientProcessingError("down")):
            await runtime.runner.drain()
        assert (await runtime.owners.get("page-1")).processing_status == "failed"

        again = await _upload(async_client, sample_txt_bytes, "notes.txt")
        assert again["jobsEnqueued"][0]["jobId"] == body["jobsEnqueued"][0]["jobId"]
        assert again["jobsEnqueued"][0]["state"] == "pending"

        await runtime.runner.drain()
        assert (await runtime.owners.get("page-1")).processing_status == "completed"
