"""System prompt assembly for agent turns."""

from __future__ import annotations

from collections.abc import Sequence

from agent_workspace.models import RetrievedContext

DEFAULT_PERSONA = "You are a helpful assistant."

KNOWLEDGE_BLOCK_TEMPLATE = """## Knowledge Base
Use the material below, retrieved from the documents loaded for this agent, to answer.
- Base your answer on this material whenever it is relevant.
- Cite the source file of the information you use, e.g. "(source: report.pdf)".
- If the material does not cover the question, say so plainly instead of guessing.

<<<KNOWLEDGE
{context}
KNOWLEDGE>>>"""

NO_DOCUMENTS_NOTE = """## Knowledge Base
No documents are loaded for this agent. Answer from your general knowledge and
say so when a question seems to depend on the user's own documents."""

TOOL_RULES = """## Tool Rules
1. Never invent identifiers. File ids and spreadsheet ids must come from a tool
   result (use gdrive_list_files first) or from earlier in this conversation.
   Reuse ids that already appeared in the conversation instead of listing again.
2. Before overwriting anything (sheets_write_values, product or order updates),
   read the current content first and decide positions from what you just read,
   never from assumed row or column offsets.
3. Results and ids shown earlier in this conversation are authoritative. Do not
   repeat a tool call whose result is already in the conversation.
4. If a tool returns an error, explain it to the user. When a spreadsheet is not
   found, list the files again to get the right id; when access is denied, ask
   the user to share the file with the connected account."""


def build_system_prompt(
    persona: str | None,
    context: RetrievedContext,
    tool_catalog: Sequence[str],
) -> str:
    """Persona, then knowledge (or its absence), then the tool catalog and rules."""
    sections = [(persona or "").strip() or DEFAULT_PERSONA]

    if context.has_context:
        sections.append(KNOWLEDGE_BLOCK_TEMPLATE.format(context=context.context))
    else:
        sections.append(NO_DOCUMENTS_NOTE)

    if tool_catalog:
        sections.append("## Available Tools\n" + "\n".join(tool_catalog))
    sections.append(TOOL_RULES)
    return "\n\n".join(sections)
