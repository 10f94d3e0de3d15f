"""Tool specification shared by both tool families."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from agent_workspace.errors import ToolArgumentsError


class ToolParams(BaseModel):
    """Base for tool parameter models: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


@dataclass(frozen=True)
class ToolSpec:
    """One entry of the tool catalog.

    ``run`` is only set for tools executed in-process (document family);
    storefront tools are forwarded to the worker as ``method``.
    """

    name: str
    description: str
    params: type[ToolParams]
    family: str
    display_name: Callable[[dict[str, Any]], str]
    describe: Callable[[dict[str, Any]], str]
    run: Callable[..., Awaitable[Any]] | None = None
    method: str | None = None

    def schema(self) -> dict[str, Any]:
        """Function-calling schema handed to the model."""
        parameters = self.params.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def parse(self, args: dict[str, Any] | None) -> ToolParams:
        try:
            return self.params.model_validate(args or {})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ToolArgumentsError(f"Invalid arguments for {self.name}: {problems}") from exc
