from typing import List

from pydantic import BaseModel, ConfigDict, Field

from lumen.domain.orchestration.subagent.base_subagent import BaseCapability, SchemaCapability


class FileTreeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_tree: str = Field(
        alias="fileTree",
        description="File tree with one path per line, directories before their contents",
    )
    reasoning: str = Field(description="Why the tree is structured this way")
    missing_context: List[str] = Field(
        default_factory=list, alias="missingContext", description="Information needed to refine the tree"
    )


class SummaryResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = Field(description="Detailed summary of the content")
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    missing_context: List[str] = Field(default_factory=list, alias="missingContext")


def default_capabilities() -> List[BaseCapability]:
    return [
        SchemaCapability("filetree", "Generate file tree structures with reasoning", FileTreeResult),
        SchemaCapability("summarize", "Create detailed summaries of content", SummaryResult),
    ]
