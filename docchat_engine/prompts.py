"""Prompt text and the fixed user-visible messages of the chat."""

from __future__ import annotations

from docchat_engine.engine.models import SelectionContext

APOLOGY_MESSAGE = "Sorry, I couldn't get a response. Please try again."

EDIT_NOT_LOCATED_MESSAGE = (
    "I couldn't find the exact text to change in the document, so I left it "
    "untouched. Please select a larger or different part of the document, or "
    "ask me to rewrite the whole document."
)

NO_CHANGES_TO_SAVE = "No changes to save"

TOOL_PLACEHOLDER_ANSWER = "[Used edit_document tool]"


def tool_usage_marker(tool_name: str = "edit_document") -> str:
    return f"**Tool used: {tool_name}**\n\n"


def chat_system_instruction(source_documents: list[str]) -> str:
    instruction = (
        "You are an assistant helping a user author an HTML document derived from "
        "their source documents. Answer questions about the sources and the "
        "document. When the user asks you to change the document, call the "
        "edit_document tool:\n"
        "  1. 'html_snippet_to_replace' + 'replacement_html' for small, targeted "
        "edits. Copy the EXACT HTML from the document, including tags and spacing.\n"
        "  2. 'full_document_html' for large or structural changes.\n"
        "To delete content, use 'html_snippet_to_replace' with an empty "
        "'replacement_html'. Never pass both shapes in one call."
    )
    if source_documents:
        combined = "\n\n--- NEXT DOCUMENT ---\n\n".join(source_documents)
        instruction += (
            "\n\n--- SOURCE DOCUMENTS START ---\n"
            f"{combined}\n"
            "--- SOURCE DOCUMENTS END ---"
        )
    return instruction


def append_document_html(instruction: str, document_html: str) -> str:
    if not document_html.strip():
        return instruction + (
            "\n\n## Document State: EMPTY\n"
            "The document in the editor is currently empty. When the user asks you "
            "to create content, call edit_document with 'full_document_html'."
        )
    return instruction + (
        "\n\nThis is the current state of the document in the editor. Use it as the "
        "primary reference for 'html_snippet_to_replace'.\n"
        f'"""\n{document_html}\n"""'
    )


def user_prompt(message: str, selection: SelectionContext | None) -> str:
    if selection is None or not (selection.selected_html or selection.selected_text):
        return message
    if selection.start_line is not None and selection.end_line is not None:
        where = f"lines {selection.start_line}-{selection.end_line}"
    else:
        where = "the selection"
    body = selection.selected_html or selection.selected_text
    return f'{message}\n\nApply this command to the following selected content at {where}:\n"""\n{body}\n"""'


REFLECTION_SYSTEM_INSTRUCTION = (
    "You are continuing a conversation where you just executed a document editing "
    "tool. Your response is a direct continuation of your previous message. Do not "
    "open with phrases like \"You got it!\" or \"I've updated it for you\". Jump "
    "straight into what specifically changed, briefly, using markdown where it "
    "helps. Do not repeat what you already said."
)


def reflection_user_prompt(tool_result: str) -> str:
    return f"Tool execution completed.\n\n{tool_result}\n\nProvide a brief summary of what was changed."
