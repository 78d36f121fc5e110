import os
import sys
import json
import logging
from typing import Dict, List, Any, Optional

from fastapi import FastAPI, WebSocket, HTTPException, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from flowstate.flow_diff import apply_flow_diff, parse_flow_diff
from flowstate.history import DEFAULT_HISTORY_SIZE
from flowstate.sessions import SessionRegistry
from flowstate.storage import DEFAULT_SESSION, FlowStorage, MemoryStorage
from flowstate.visual_base_models import FlowEdge, FlowNode

# Configure Logging - Send to stderr to keep stdout clean for MCP
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger("flowstate")

# Sessions live in the user's home directory so the MCP process and the UI server share data
SESSIONS_DIR = os.environ.get(
    "FLOWSTATE_SESSIONS_DIR",
    os.path.join(os.path.expanduser("~/.flowstate"), "sessions")
)
PORT = int(os.environ.get("FLOWSTATE_PORT", 8080))
HISTORY_SIZE = int(os.environ.get("FLOWSTATE_HISTORY_SIZE", DEFAULT_HISTORY_SIZE))


def build_registry(sessions_dir: Optional[str] = None, in_memory: bool = False,
                   history_size: int = HISTORY_SIZE) -> SessionRegistry:
    storage = MemoryStorage() if in_memory else FlowStorage(sessions_dir=sessions_dir or SESSIONS_DIR)
    return SessionRegistry(storage, history_size=history_size)


def register_flow_tools(mcp, registry: SessionRegistry):
    """Registers the assistant-facing tools on any object exposing a FastMCP-style ``tool()`` decorator."""

    @mcp.tool()
    def list_sessions() -> List[str]:
        """
        Lists all available flow sessions.
        Returns: A list of session ID strings.
        """
        logger.info("Tool Call: list_sessions()")
        return registry.list_sessions()

    @mcp.tool()
    def get_flow_context(session_id: str = DEFAULT_SESSION) -> str:
        """
        Returns the current flow as context for interpreting an instruction.
        Use this before proposing a diff so node references match what exists.

        Args:
            session_id: The session ID to query. Defaults to "default".

        Returns:
            JSON string: { "nodes": [{id, type, label, position}], "edges": [{id, source, target}] }
        """
        logger.info(f"Tool Call: get_flow_context(session_id={session_id})")
        return json.dumps(registry.get(session_id).assistant_context(), indent=2)

    @mcp.tool()
    def apply_diff(session_id: str, diff: Dict[str, Any]) -> str:
        """
        Applies a flow diff (one operation or a batch) to the session's flow.

        A single operation looks like:
            {"action": "add_edge", "sourceId": "Data Source", "targetId": "GPT-4"}
        Actions: add_node, update_node, delete_node, add_edge, delete_edge, clear_all, explain.
        Fields: nodeId, nodeType, nodeLabel, nodePosition {x, y}, sourceId, targetId, edgeId, explanation.
        Nodes may be referenced by id, label (exact or partial, case-insensitive) or type.

        A batch is {"operations": [...], "explanation": "..."}; later operations can
        reference nodes added earlier in the same batch, and the batch undoes as one step.

        Args:
            session_id: The target session ID.
            diff: The diff object.
        """
        logger.info(f"Tool Call: apply_diff(session_id={session_id})")
        parsed = parse_flow_diff(diff)
        if parsed is None:
            return "Error: Invalid flow diff."
        result = apply_flow_diff(registry.get(session_id), parsed)
        return f"{result.message} (applied {result.applied}, skipped {result.skipped})"

    @mcp.tool()
    def undo(session_id: str = DEFAULT_SESSION) -> str:
        """
        Undoes the last change to the session's flow.

        Args:
            session_id: The session ID.
        """
        logger.info(f"Tool Call: undo(session_id={session_id})")
        if registry.get(session_id).undo():
            return "Undone."
        return "Nothing to undo."

    @mcp.tool()
    def redo(session_id: str = DEFAULT_SESSION) -> str:
        """
        Re-applies the last undone change.

        Args:
            session_id: The session ID.
        """
        logger.info(f"Tool Call: redo(session_id={session_id})")
        if registry.get(session_id).redo():
            return "Redone."
        return "Nothing to redo."

    @mcp.tool()
    def save_flow(session_id: str, name: str) -> str:
        """
        Saves the current flow under a name. Names need not be unique.

        Args:
            session_id: The session ID.
            name: A human-readable name for the saved flow.

        Returns:
            The saved flow's ID.
        """
        logger.info(f"Tool Call: save_flow(session_id={session_id}, name={name})")
        return registry.get(session_id).save_flow(name)

    @mcp.tool()
    def list_saved_flows(session_id: str = DEFAULT_SESSION) -> str:
        """
        Lists saved flows, most recent first.

        Returns:
            JSON string with id, name, timestamp and node/edge counts per flow.
        """
        logger.info(f"Tool Call: list_saved_flows(session_id={session_id})")
        flows = registry.get(session_id).get_saved_flows()
        return json.dumps([
            {
                "id": f.id,
                "name": f.name,
                "timestamp": f.timestamp,
                "nodes": len(f.snapshot.nodes),
                "edges": len(f.snapshot.edges),
            }
            for f in flows
        ], indent=2)

    @mcp.tool()
    def load_flow(session_id: str, flow_id: str) -> str:
        """
        Replaces the current flow with a saved one. Loading can be undone.

        Args:
            session_id: The session ID.
            flow_id: The ID returned by save_flow or list_saved_flows.
        """
        logger.info(f"Tool Call: load_flow(session_id={session_id}, flow_id={flow_id})")
        if registry.get(session_id).load_flow(flow_id):
            return f"Flow '{flow_id}' loaded."
        return f"Error: Saved flow '{flow_id}' not found."

    @mcp.tool()
    def export_flow(session_id: str = DEFAULT_SESSION) -> str:
        """
        Exports the current flow as JSON text: { nodes, edges, exportedAt, version }.
        """
        logger.info(f"Tool Call: export_flow(session_id={session_id})")
        return registry.get(session_id).export_flow()

    @mcp.tool()
    def import_flow(session_id: str, content: str) -> str:
        """
        Replaces the current flow with exported JSON text. Importing can be undone.

        Args:
            session_id: The session ID.
            content: JSON text with "nodes" and "edges" arrays.
        """
        logger.info(f"Tool Call: import_flow(session_id={session_id})")
        if registry.get(session_id).import_flow(content):
            return "Flow imported."
        return "Error: Invalid flow data. Expected JSON with 'nodes' and 'edges' arrays."

    return mcp


def get_flow_mcp(registry: SessionRegistry):
    """Create FastMCP server bound to the given session registry."""
    from mcp.server.fastmcp import FastMCP

    mcp = FastMCP(
        name="flowstate",
        instructions="""
        flowstate: edit a visual flow graph from natural-language instructions.
        Read the current flow with get_flow_context, then express the user's instruction
        as a flow diff and submit it with apply_diff. Prefer a batch when one instruction
        needs several operations (e.g. add two nodes and connect them).
        Reference existing nodes by the ids or labels shown in the context.
        """
    )
    return register_flow_tools(mcp, registry)


# --- HTTP / WebSocket surface for the rendering layer ---

class NodesPayload(BaseModel):
    nodes: List[FlowNode]
    record_history: bool = True

class EdgesPayload(BaseModel):
    edges: List[FlowEdge]
    record_history: bool = True

class SaveFlowPayload(BaseModel):
    name: str

class ImportPayload(BaseModel):
    content: str

# WebSocket Manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping websocket after failed send: {e}")
                self.disconnect(connection)


def create_app(registry: SessionRegistry) -> FastAPI:
    app = FastAPI(title="flowstate Server")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    manager = ConnectionManager()
    app.state.registry = registry
    app.state.connections = manager

    async def graph_response(session_id: str):
        """Broadcasts the committed graph to every client and returns it."""
        data = registry.get(session_id).get_graph()
        await manager.broadcast({"type": "graph_update", "session_id": session_id, "data": data})
        return data

    # --- Sessions ---

    @app.get("/sessions")
    async def list_sessions_api():
        return registry.list_sessions()

    @app.post("/sessions/{session_id}")
    async def create_session_api(session_id: str):
        created = registry.create_session(session_id)
        return {"status": "created" if created else "exists", "session": session_id}

    @app.delete("/sessions/{session_id}")
    async def delete_session_api(session_id: str):
        if not registry.delete_session(session_id):
            raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
        return {"status": "deleted", "session": session_id}

    # --- Graph reads and mutations ---

    @app.get("/api/sessions/{session_id}/graph")
    async def get_graph_api(session_id: str):
        return registry.get(session_id).get_graph()

    @app.put("/api/sessions/{session_id}/nodes")
    async def set_nodes_api(session_id: str, payload: NodesPayload):
        registry.get(session_id).set_nodes(payload.nodes, record_history=payload.record_history)
        return await graph_response(session_id)

    @app.put("/api/sessions/{session_id}/edges")
    async def set_edges_api(session_id: str, payload: EdgesPayload):
        registry.get(session_id).set_edges(payload.edges, record_history=payload.record_history)
        return await graph_response(session_id)

    @app.post("/api/sessions/{session_id}/nodes")
    async def add_node_api(session_id: str, node: FlowNode):
        registry.get(session_id).add_node(node)
        return await graph_response(session_id)

    @app.post("/api/sessions/{session_id}/edges")
    async def add_edge_api(session_id: str, connection: Dict[str, Any]):
        if registry.get(session_id).add_edge(connection) is None:
            raise HTTPException(status_code=400, detail="Expected an edge or a source/target connection")
        return await graph_response(session_id)

    @app.patch("/api/sessions/{session_id}/nodes/{node_id:path}")
    async def update_node_api(session_id: str, node_id: str, updates: Dict[str, Any]):
        graph = registry.get(session_id)
        if graph.get_node(node_id) is None:
            raise HTTPException(status_code=404, detail=f"Node '{node_id}' not found")
        if not graph.update_node(node_id, updates):
            raise HTTPException(status_code=400, detail="Invalid node fields")
        return await graph_response(session_id)

    @app.delete("/api/sessions/{session_id}/nodes/{node_id:path}")
    async def delete_node_api(session_id: str, node_id: str):
        if not registry.get(session_id).delete_node(node_id):
            raise HTTPException(status_code=404, detail=f"Node '{node_id}' not found")
        return await graph_response(session_id)

    @app.delete("/api/sessions/{session_id}/edges/{edge_id:path}")
    async def delete_edge_api(session_id: str, edge_id: str):
        if not registry.get(session_id).delete_edge(edge_id):
            raise HTTPException(status_code=404, detail=f"Edge '{edge_id}' not found")
        return await graph_response(session_id)

    @app.post("/api/sessions/{session_id}/reset")
    async def reset_api(session_id: str):
        registry.get(session_id).reset()
        return await graph_response(session_id)

    # --- History ---

    @app.post("/api/sessions/{session_id}/history")
    async def push_history_api(session_id: str):
        """Gesture completion (drag end, removal): record the live graph."""
        recorded = registry.get(session_id).push_to_history()
        return {"recorded": recorded}

    @app.post("/api/sessions/{session_id}/undo")
    async def undo_api(session_id: str):
        changed = registry.get(session_id).undo()
        data = await graph_response(session_id) if changed else registry.get(session_id).get_graph()
        return {"changed": changed, **data}

    @app.post("/api/sessions/{session_id}/redo")
    async def redo_api(session_id: str):
        changed = registry.get(session_id).redo()
        data = await graph_response(session_id) if changed else registry.get(session_id).get_graph()
        return {"changed": changed, **data}

    # --- Saved flows, export/import ---

    @app.get("/api/sessions/{session_id}/flows")
    async def list_flows_api(session_id: str):
        return [f.model_dump(mode="json") for f in registry.get(session_id).get_saved_flows()]

    @app.post("/api/sessions/{session_id}/flows")
    async def save_flow_api(session_id: str, payload: SaveFlowPayload):
        flow_id = registry.get(session_id).save_flow(payload.name)
        return {"id": flow_id}

    @app.post("/api/sessions/{session_id}/flows/{flow_id}/load")
    async def load_flow_api(session_id: str, flow_id: str):
        if not registry.get(session_id).load_flow(flow_id):
            raise HTTPException(status_code=404, detail=f"Saved flow '{flow_id}' not found")
        return await graph_response(session_id)

    @app.delete("/api/sessions/{session_id}/flows/{flow_id}")
    async def delete_flow_api(session_id: str, flow_id: str):
        registry.get(session_id).delete_flow(flow_id)
        return {"status": "deleted", "id": flow_id}

    @app.get("/api/sessions/{session_id}/export")
    async def export_flow_api(session_id: str):
        return {"content": registry.get(session_id).export_flow(), "format": "json"}

    @app.post("/api/sessions/{session_id}/import")
    async def import_flow_api(session_id: str, payload: ImportPayload):
        if not registry.get(session_id).import_flow(payload.content):
            raise HTTPException(status_code=400, detail="Invalid flow data: expected JSON with 'nodes' and 'edges' arrays")
        return await graph_response(session_id)

    # --- Assistant ---

    @app.get("/api/sessions/{session_id}/context")
    async def assistant_context_api(session_id: str):
        return registry.get(session_id).assistant_context()

    @app.post("/api/sessions/{session_id}/diff")
    async def apply_diff_api(session_id: str, payload: Dict[str, Any]):
        diff = parse_flow_diff(payload)
        if diff is None:
            raise HTTPException(status_code=400, detail="Invalid flow diff")
        result = apply_flow_diff(registry.get(session_id), diff)
        data = await graph_response(session_id) if result.applied else registry.get(session_id).get_graph()
        return {"response": result.message, "result": result.model_dump(), "graph": data}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, session_id: str = DEFAULT_SESSION):
        await manager.connect(websocket)
        try:
            # Send initial graph state
            await websocket.send_json({"type": "graph_update", "session_id": session_id, "data": registry.get(session_id).get_graph()})

            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            manager.disconnect(websocket)
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            manager.disconnect(websocket)

    return app


def run_server(host: str = "0.0.0.0", port: Optional[int] = None, sessions_dir: Optional[str] = None, in_memory: bool = False):
    """Start the flowstate HTTP + WebSocket server."""
    import uvicorn

    port = port or PORT
    registry = build_registry(sessions_dir=sessions_dir, in_memory=in_memory)
    app = create_app(registry)

    logger.info("=" * 60)
    logger.info("flowstate Server")
    logger.info(f"API: http://localhost:{port}/api/sessions/{DEFAULT_SESSION}/graph")
    logger.info(f"Storage: {'in-memory' if in_memory else (sessions_dir or SESSIONS_DIR)}")
    logger.info("MCP: Run via `flowstate mcp`")
    logger.info("=" * 60)

    config = uvicorn.Config(app, host=host, port=port, log_config=None)
    server = uvicorn.Server(config)
    server.run()


def run_mcp_stdio(sessions_dir: Optional[str] = None):
    """Run as MCP server via stdio."""
    get_flow_mcp(build_registry(sessions_dir=sessions_dir)).run(transport="stdio")


if __name__ == "__main__":
    run_server()
