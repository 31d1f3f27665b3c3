"""Integration tests for the MCP tools."""

from pathlib import Path

import pytest

from cblock import config as cblock_config
from cblock.documents.models import DocumentMetadata, FileUpload, Uploader
from cblock.server import (
    check_mint_eligibility,
    document_stats,
    get_document,
    list_documents,
    user_documents,
    verify_audit_log,
)
from cblock.service import build_service

WALLET = "0x" + "a" * 40


@pytest.fixture(autouse=True)
def isolated_cblock_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Redirect ~/.cblock/ to a temp dir for test isolation."""
    cblock_dir = tmp_path / ".cblock"
    monkeypatch.setattr(cblock_config, "CBLOCK_DIR", cblock_dir)
    monkeypatch.setattr(cblock_config, "DATA_DIR", cblock_dir / "data")
    monkeypatch.setattr(cblock_config, "CONTENT_DIR", cblock_dir / "content")
    monkeypatch.setattr(cblock_config, "KEYS_DIR", cblock_dir / "keys")
    monkeypatch.setattr(cblock_config, "LEDGER_DIR", cblock_dir / "ledger")
    yield cblock_dir


async def upload_report() -> str:
    service = build_service()
    result = await service.lifecycle.register_upload(
        FileUpload(filename="report.pdf", mime_type="application/pdf", content=b"%PDF-1.4"),
        DocumentMetadata(project_name="Mangrove restoration", project_type="Blue Carbon"),
        Uploader(identity=WALLET, name="Acme"),
    )
    return result.document.id


@pytest.mark.asyncio
async def test_empty_system():
    assert await list_documents() == []
    stats = await document_stats()
    assert stats["total"] == 0
    result = await verify_audit_log()
    assert result["valid"] is True


@pytest.mark.asyncio
async def test_document_tools():
    doc_id = await upload_report()

    docs = await list_documents(status="pending")
    assert [d["id"] for d in docs] == [doc_id]
    assert await list_documents(status="minted") == []
    assert [d["id"] for d in await list_documents(search="mangrove", reconcile=True)] == [doc_id]

    doc = await get_document(doc_id)
    assert doc["metadata"]["project_type"] == "Blue Carbon"
    assert [d["id"] for d in await user_documents(WALLET)] == [doc_id]

    eligibility = await check_mint_eligibility(doc_id)
    assert eligibility == {
        "eligible": False,
        "reason": "Document must be attested before minting",
    }
