"""Argument schemas for every operation the server exposes.

Each model is one variant of the operation argument union. The dispatcher
turns the untyped MCP payload into one of these before any handler runs.
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr


class OperationArgs(BaseModel):
    """Base for argument models; no type coercion, so "false" is not a bool."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ReadFileArgs(OperationArgs):
    path: StrictStr = Field(..., description="Path to the file to read")


class ReadMultipleFilesArgs(OperationArgs):
    paths: List[StrictStr] = Field(..., description="List of file paths to read")


class WriteFileArgs(OperationArgs):
    path: StrictStr = Field(..., description="Path to the file to write")
    content: StrictStr = Field(..., description="Content to write")


class EditOperation(OperationArgs):
    match_text: StrictStr = Field(
        ...,
        alias="matchText",
        min_length=1,
        description="Text to replace; must occur exactly once in the file",
    )
    replacement_text: StrictStr = Field(..., alias="replacementText", description="Text to insert instead")


class EditFileArgs(OperationArgs):
    path: StrictStr = Field(..., description="Path to the file to edit")
    edits: List[EditOperation] = Field(..., description="Edits applied in order")
    dry_run: StrictBool = Field(
        False,
        alias="dryRun",
        description="Preview changes using diff format without writing them",
    )


class CreateDirectoryArgs(OperationArgs):
    path: StrictStr = Field(..., description="Directory to create, including missing parents")


class ListDirectoryArgs(OperationArgs):
    path: StrictStr = Field(..., description="Directory to list")


class DirectoryTreeArgs(OperationArgs):
    path: StrictStr = Field(..., description="Directory to build the tree from")


class MoveFileArgs(OperationArgs):
    source: StrictStr = Field(..., description="Source path")
    destination: StrictStr = Field(..., description="Destination path; must not exist")


class SearchFilesArgs(OperationArgs):
    path: StrictStr = Field(..., description="Directory to search in")
    pattern: StrictStr = Field(
        ...,
        description="Case-insensitive glob matched against names; plain text matches as a substring",
    )
    exclude_patterns: List[StrictStr] = Field(
        default_factory=list,
        alias="excludePatterns",
        description="Glob patterns, relative to the search path, whose matches are skipped with their subtrees",
    )


class GetFileInfoArgs(OperationArgs):
    path: StrictStr = Field(..., description="Path to the file or directory")


class NoArgs(OperationArgs):
    pass


def input_schema(model: type[OperationArgs]) -> dict:
    """JSON schema advertised to clients, using the wire (camelCase) names."""
    return model.model_json_schema(by_alias=True)
