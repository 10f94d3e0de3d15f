"""CLI entry point for chatting with a workspace agent.

A terminal chat loop for development; production traffic goes through
the FastAPI server (``agent_workspace/server.py``).  Tool activity is
printed as it is published.

Usage:
    python -m agent_workspace.main --prompt "You are a sales analyst."
    python -m agent_workspace.main --seed workspace.json --user u1 --agent a1
    python -m agent_workspace.main --debug
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid
from typing import Any

from agent_workspace.models import Agent
from agent_workspace.orchestrator import TurnOrchestrator
from agent_workspace.server import build_chat_model, build_retriever
from agent_workspace.services.process_manager import ProcessManager
from agent_workspace.services.progress import ProgressChannel
from agent_workspace.services.retriever import InMemoryChunkIndex
from agent_workspace.services.store import InMemoryWorkspaceStore, load_seed
from agent_workspace.services.vault import InMemoryCredentialVault
from agent_workspace.tools.registry import ToolRegistry
from agent_workspace.turns import TurnService

logger = logging.getLogger(__name__)

CLI_USER_ID = "cli-user"
CLI_AGENT_ID = "cli-agent"


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
        force=True,
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("agent_workspace").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_event(event: str, payload: dict[str, Any]) -> None:
    """Render progress events; text chunks are left to the final reply."""
    if event in ("tools_requested", "additional_tools_requested"):
        print(f"  [tools] {', '.join(payload['names'])}")
    elif event == "tool_start":
        print(f"  [..] {payload['description']}")
    elif event == "tool_success":
        print(f"  [ok] {payload['displayName']}")
    elif event == "tool_error":
        print(f"  [error] {payload['displayName']}: {payload['error']}")


class _ConsoleProgress(ProgressChannel):
    """Progress channel whose only listener is the terminal."""

    def emitter(self, session_id: str | None):
        return _print_event


async def _chat_loop(args: argparse.Namespace) -> None:
    store = InMemoryWorkspaceStore()
    vault = InMemoryCredentialVault()
    index = InMemoryChunkIndex()
    if args.seed:
        load_seed(args.seed, store, vault, index)

    user_id = args.user or CLI_USER_ID
    agent_id = args.agent or CLI_AGENT_ID
    if await store.get_agent(agent_id, user_id) is None:
        store.add_agent(Agent(id=agent_id, user_id=user_id, name="CLI agent", prompt=args.prompt or ""))

    progress = _ConsoleProgress()
    process_manager = ProcessManager(vault)
    registry = ToolRegistry(vault, process_manager)
    turns = TurnService(
        agents=store,
        conversations=store,
        retriever=build_retriever(index),
        orchestrator=TurnOrchestrator(build_chat_model(), registry, stream=False, chunk_delay=0),
        progress=progress,
    )

    conversation_id: str | None = None
    session_id = str(uuid.uuid4())

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break
            if user_input.lower() == "new":
                conversation_id = None
                print("\n>> New conversation started.\n")
                continue

            try:
                reply = await turns.handle_turn(
                    agent_id=agent_id,
                    user_id=user_id,
                    message=user_input,
                    conversation_id=conversation_id,
                    session_id=session_id,
                )
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\nAgent: Sorry, something went wrong: {e}\n")
                continue

            conversation_id = reply.conversation_id
            print(f"\nAgent: {reply.content}\n")
            if args.debug and reply.tools_executed:
                print(json.dumps(reply.tools_executed, indent=2, ensure_ascii=False, default=str))
    finally:
        await process_manager.stop_all()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Agent Workspace CLI")
    parser.add_argument("--prompt", help="Persona prompt for the ad-hoc CLI agent")
    parser.add_argument("--seed", help="JSON seed file with agents, credentials and chunks")
    parser.add_argument("--user", help=f"User id (default {CLI_USER_ID})")
    parser.add_argument("--agent", help=f"Agent id (default {CLI_AGENT_ID})")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages and the executed-tool records",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Agent Workspace - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    asyncio.run(_chat_loop(args))


if __name__ == "__main__":
    main()
