# mcp_server.py
from typing import Optional

from fastmcp import FastMCP
from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import JSONResponse

from zlink_indexer import queries
from zlink_indexer.config import Settings, configure_logging, load_settings
from zlink_indexer.db import CheckpointStore, RecordStore, open_db
from zlink_indexer.relay import Relayer, handle_submit

# --------- Pydantic input models ----------
class UtxoPageIn(BaseModel):
    utxos_type: str = Field("encrypted", pattern="^(encrypted|unencrypted)$")
    start: int = Field(0, ge=0)
    end: int = Field(100, ge=0)

class TreeIndexIn(BaseModel):
    tree_index: int = Field(..., ge=0)

class CommitmentIn(BaseModel):
    commitment: str = Field(..., min_length=1)


def create_app(settings: Settings, conn=None, relayer: Optional[Relayer] = None) -> FastMCP:
    conn = conn if conn is not None else open_db(settings.db_path)
    checkpoints = CheckpointStore(conn)
    records = RecordStore(conn)
    relayer = relayer or Relayer(settings)

    mcp = FastMCP("zlink-index-mcp", version="0.1.0")

    # ----------------- Tools ------------------
    @mcp.tool(name="indexer_health")
    def indexer_health_t() -> dict:
        """Last indexed block, latest observed block and the lag between them."""
        return queries.health(checkpoints)[1]

    @mcp.tool(name="utxos_page")
    def utxos_page_t(args: UtxoPageIn) -> dict:
        """Unspent payloads of one kind, positions [start, end), at most 1100 per page."""
        return queries.get_utxos(records, args.start, args.end, args.utxos_type)[1]

    @mcp.tool(name="commitments_at")
    def commitments_at_t(args: TreeIndexIn) -> dict:
        """All commitments recorded at a tree position."""
        return queries.get_commitments(records, args.tree_index)[1]

    @mcp.tool(name="tree_index_of")
    def tree_index_of_t(args: CommitmentIn) -> dict:
        """Tree position of a commitment."""
        return queries.get_tree_index(records, args.commitment)[1]

    # ----------------- HTTP routes ------------------
    def reply(result) -> JSONResponse:
        status, payload = result
        return JSONResponse(payload, status_code=status)

    @mcp.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> JSONResponse:
        return reply(queries.health(checkpoints))

    @mcp.custom_route("/utxos", methods=["GET"])
    async def utxos_route(request: Request) -> JSONResponse:
        q = request.query_params
        return reply(queries.get_utxos(records, q.get("start", 0), q.get("end", 100), q.get("utxos_type")))

    @mcp.custom_route("/commitments/{treeIndex}", methods=["GET"])
    async def commitments_route(request: Request) -> JSONResponse:
        return reply(queries.get_commitments(records, request.path_params["treeIndex"]))

    @mcp.custom_route("/treeIndex/{commitment}", methods=["GET"])
    async def tree_index_route(request: Request) -> JSONResponse:
        return reply(queries.get_tree_index(records, request.path_params["commitment"]))

    @mcp.custom_route("/relayer/submit-proof/{method}", methods=["POST"])
    async def submit_proof_route(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"isSuccess": False, "message": "Invalid request"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"isSuccess": False, "message": "Invalid request"}, status_code=400)
        return reply(await handle_submit(relayer, request.path_params["method"], body))

    return mcp


def main():
    settings = load_settings()
    configure_logging(settings.log_level)
    mcp = create_app(settings)
    mcp.run(host=settings.http_host, port=settings.http_port, transport="http")


if __name__ == "__main__":
    main()
