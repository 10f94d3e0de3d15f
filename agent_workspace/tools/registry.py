"""Tool catalog and dispatch.

The registry exposes the function-calling schemas to the model and runs
a named tool on behalf of a user:

* ``woocommerce_*`` tools go to the user's storefront worker, which is
  started on first use;
* every other tool fetches the user's Google credentials, opens an
  authenticated client and runs its executor.

Errors propagate to the caller (the orchestrator), which turns them into
``{"error": ...}`` tool results.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from agent_workspace.errors import UnknownToolError
from agent_workspace.services.google_client import GoogleWorkspaceClient
from agent_workspace.services.metrics import metrics
from agent_workspace.services.process_manager import ProcessManager
from agent_workspace.services.vault import GOOGLE, CredentialVault
from agent_workspace.tools.base import ToolParams, ToolSpec
from agent_workspace.tools.google import GOOGLE_TOOLS
from agent_workspace.tools.storefront import STOREFRONT_TOOLS, TOOL_PREFIX

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], GoogleWorkspaceClient]


class ToolRegistry:
    def __init__(
        self,
        vault: CredentialVault,
        process_manager: ProcessManager,
        *,
        tools: Iterable[ToolSpec] | None = None,
        client_factory: ClientFactory = GoogleWorkspaceClient,
    ) -> None:
        self._vault = vault
        self._processes = process_manager
        self._client_factory = client_factory
        specs = list(tools) if tools is not None else [*GOOGLE_TOOLS, *STOREFRONT_TOOLS]
        self._tools: dict[str, ToolSpec] = {spec.name: spec for spec in specs}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    # ── Model-facing views ───────────────────────────────────────────

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.schema() for spec in self._tools.values()]

    def catalog_lines(self) -> list[str]:
        return [f"- {spec.name}: {spec.description}" for spec in self._tools.values()]

    # ── Human-facing labels ──────────────────────────────────────────

    def display_name(self, name: str, args: dict[str, Any]) -> str:
        spec = self._tools.get(name)
        if spec is None:
            return name
        try:
            return spec.display_name(args)
        except Exception:
            logger.debug("display_name failed for %s", name, exc_info=True)
            return name

    def describe(self, name: str, args: dict[str, Any]) -> str:
        spec = self._tools.get(name)
        if spec is None:
            return f"Unknown tool {name}"
        try:
            return spec.describe(args)
        except Exception:
            logger.debug("describe failed for %s", name, exc_info=True)
            return spec.description

    # ── Execution ────────────────────────────────────────────────────

    async def execute(self, name: str, args: dict[str, Any] | None, user_id: str) -> Any:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name)
        params = spec.parse(args)

        with metrics.track("tools", name):
            if name.startswith(TOOL_PREFIX):
                return await self._execute_storefront(spec, params, user_id)
            return await self._execute_document(spec, params, user_id)

    async def _execute_storefront(self, spec: ToolSpec, params: ToolParams, user_id: str) -> Any:
        await self._processes.ensure_started(user_id)
        return await self._processes.send_request(
            user_id, spec.method, params.model_dump(by_alias=True, exclude_none=True),
        )

    async def _execute_document(self, spec: ToolSpec, params: ToolParams, user_id: str) -> Any:
        creds = await self._vault.get_credentials(user_id, GOOGLE)
        access_token = creds.require("access_token")
        async with self._client_factory(access_token) as client:
            return await spec.run(client, params)
