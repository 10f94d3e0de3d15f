"""Agent Workspace: chat with user-configured agents that can use tools.

Architecture Overview
=====================

A turn (one user message → one assistant reply) runs through:

1. **Knowledge retrieval**: the message is embedded and matched against the
   agent's document chunks; matches are injected into the system prompt with
   their source file names.

2. **Turn orchestrator**: a LangGraph state machine alternating between a
   **model** node (Claude with the tool catalog bound) and a **tools** node.
   Tool rounds are capped (two escalations by default) so every turn ends.

3. **Tools**: Google Drive/Sheets calls made with the user's OAuth token, and
   WooCommerce calls proxied over JSON-RPC to a per-user worker process.

4. **Progress channel**: tool activity and text chunks are pushed over SSE
   while the POST request waits for the authoritative reply.

Key Design Decisions
--------------------
- **Sequential tools**: calls in one round run one after another, so a read
  that follows a write sees the write.
- **Errors stay local**: a failed tool call becomes an ``{"error": ...}`` tool
  result the model can react to; only a failed model call fails the turn.
- **Best-effort retrieval**: any retrieval failure means "no context".
- **Owned registries**: worker processes and progress sessions live in
  components built by the server lifespan and injected where needed.

Package Structure
-----------------
- ``agent_workspace/orchestrator.py``: LangGraph turn graph
- ``agent_workspace/streaming.py``: incremental / simulated text streaming
- ``agent_workspace/turns.py``: turn service behind the messages endpoint
- ``agent_workspace/prompts.py``: system prompt assembly
- ``agent_workspace/config.py``: configuration from env / SSM
- ``agent_workspace/server.py``: FastAPI application
- ``agent_workspace/main.py``: CLI chat interface
- ``agent_workspace/services/``: retrieval, vault, stores, Google client,
  worker processes, progress channel, metrics
- ``agent_workspace/tools/``: tool catalog and dispatch
- ``agent_workspace/api/``: FastAPI routes and Pydantic schemas
"""
