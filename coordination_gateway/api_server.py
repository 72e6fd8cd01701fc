# coordination_gateway/api_server.py
"""
HTTP API for dashboards and operators.

Read-mostly views over the gateway plus a generic tool endpoint. The
lifespan starts the conversation timeout monitor on the gateway loop and
stops it on shutdown.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .errors import ConversationNotFoundError
from .runtime import get_runtime
from .tools import find_tool_by_name, get_tools_schema


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    runtime = get_runtime()
    await runtime.bridge.run(runtime.start())
    yield
    # Shutdown
    await runtime.bridge.run(runtime.stop())


app = FastAPI(title="Coordination Gateway API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check():
    report = get_runtime().monitor.health_report()
    return {"status": report["status"], "health_score": report["health_score"], "version": __version__}


@app.get("/api/tools")
def list_tools(area: Optional[str] = None):
    return {"tools": get_tools_schema(area)}


@app.post("/api/tools/{tool_name}")
async def call_tool(tool_name: str, arguments: Dict[str, Any]):
    tool = find_tool_by_name(tool_name)
    if tool is None:
        raise HTTPException(status_code=404, detail=f"Tool '{tool_name}' not found")
    return await get_runtime().bridge.run(tool.run(**arguments))


@app.get("/api/conversations")
async def list_conversations():
    runtime = get_runtime()

    async def collect():
        return [runtime.conversations.get_status(c.conversation_id) for c in runtime.conversations.list_active()]

    return {"conversations": await runtime.bridge.run(collect())}


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    runtime = get_runtime()

    async def collect():
        return {
            "status": runtime.conversations.get_status(conversation_id),
            "metrics": runtime.conversations.get_metrics(conversation_id),
        }

    try:
        return await runtime.bridge.run(collect())
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@app.get("/api/metrics")
async def get_metrics():
    runtime = get_runtime()

    async def collect():
        return runtime.system_metrics()

    return await runtime.bridge.run(collect())
