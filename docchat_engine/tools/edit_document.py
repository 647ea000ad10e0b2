"""edit_document: the one tool the assistant uses to mutate the document."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from docchat_engine.tools.registry import ToolDef, ToolRegistry

EDIT_DOCUMENT = "edit_document"


class EditDocumentInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_document_html: str | None = Field(
        default=None,
        description=(
            "The complete new HTML content for the entire document. Use this for "
            "major rewrites or when the user has selected a large, multi-paragraph "
            "portion of text."
        ),
    )
    html_snippet_to_replace: str | None = Field(
        default=None,
        description=(
            "An exact HTML snippet from the current document that needs to be "
            "replaced. Use this for targeted, small edits. Copy the HTML exactly as "
            "it appears, including tags, spacing and structure. If you cannot find "
            "an exact match, use full_document_html instead."
        ),
    )
    replacement_html: str | None = Field(
        default=None,
        description=(
            "The HTML that replaces html_snippet_to_replace. Use an empty string to "
            "delete the snippet. Required whenever html_snippet_to_replace is used."
        ),
    )


EDIT_DOCUMENT_TOOL = ToolDef(
    name=EDIT_DOCUMENT,
    description=(
        "Edits the document content. Use this tool when the user asks to make "
        "changes, rewrite, summarize, or modify the document."
    ),
    input_model=EditDocumentInput,
)


def default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EDIT_DOCUMENT_TOOL)
    return registry
