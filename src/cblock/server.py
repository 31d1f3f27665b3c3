"""MCP server exposing read-only document and audit tools."""

from mcp.server.fastmcp import FastMCP

from cblock.documents.models import DocumentFilters
from cblock.service import CBlockService, build_service

mcp = FastMCP("cblock")


def _get_service() -> CBlockService:
    return build_service()


@mcp.tool()
async def list_documents(
    status: str | None = None,
    uploader: str | None = None,
    project_type: str | None = None,
    search: str | None = None,
    reconcile: bool = False,
) -> list[dict]:
    """List documents, newest first.

    Args:
        status: Only this status - "pending", "attested", "minted" or "rejected"
        uploader: Only documents uploaded by this identity
        project_type: Substring of the project type
        search: Free text over project name, description and uploader
        reconcile: Merge with ledger records before listing (default: local only)
    """
    service = _get_service()
    filters = DocumentFilters(
        status=status, uploader=uploader, project_type=project_type, search=search
    )
    docs = await service.engine.list_documents(filters, prefer_local=not reconcile)
    return [d.model_dump(mode="json") for d in docs]


@mcp.tool()
async def get_document(document_id: str) -> dict:
    """Get one document by id or content id.

    Args:
        document_id: Document id, local id or content id
    """
    service = _get_service()
    doc = await service.engine.get_document(document_id)
    return doc.model_dump(mode="json")


@mcp.tool()
async def user_documents(identity: str) -> list[dict]:
    """List the documents uploaded by one identity.

    Args:
        identity: Wallet address or email of the uploader
    """
    service = _get_service()
    docs = await service.engine.user_documents(identity)
    return [d.model_dump(mode="json") for d in docs]


@mcp.tool()
async def document_stats() -> dict:
    """Document counts per lifecycle status."""
    service = _get_service()
    stats = await service.engine.document_stats()
    return stats.model_dump(mode="json")


@mcp.tool()
async def check_mint_eligibility(document_id: str) -> dict:
    """Check whether a document can be minted, and why not.

    Args:
        document_id: Document id
    """
    service = _get_service()
    result = await service.lifecycle.check_mint_eligibility(document_id)
    return result.model_dump(mode="json")


@mcp.tool()
async def verify_audit_log() -> dict:
    """Verify the admin audit log hash chain."""
    service = _get_service()
    return service.audit_log.verify().model_dump(mode="json")
