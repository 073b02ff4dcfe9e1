"""
MCP Server that wraps the FastAPI app.
Converts the FairLens endpoints into MCP tools using FastMCP.

Run with: fastmcp run fairlens/mcp_server.py --transport sse --port 8000
"""

from fastmcp import FastMCP

from fairlens.app import app
from fairlens.intake import document_slots
from fairlens.models import CustomerKind

# Convert FastAPI app to MCP server
mcp = FastMCP.from_fastapi(app=app)


@mcp.tool()
async def get_document_requirements(customer_type: str) -> dict:
    """List the document upload slots for INDIVIDUAL or SME customers and whether each is required."""
    slots = document_slots(CustomerKind(customer_type.upper()))
    return {
        "customer_type": customer_type.upper(),
        "documents": [
            {"slot": slot, "label": req.label, "required": req.required, "description": req.description}
            for slot, req in slots.items()
        ],
    }


if __name__ == "__main__":
    mcp.run()
