#!/usr/bin/env python3
"""
Secure Filesystem MCP Server - sandboxed file operations over MCP.

Exposes read, write, edit, list, search, tree, move and stat operations.
Every path is confined to the allowed directories given at startup;
every outcome, success or failure, goes back as a single CallToolResult.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from pydantic import ValidationError

# Logs go to stderr; stdout belongs to the stdio transport
LOG_LEVEL = os.environ.get("SECURE_FS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("secure-fs-server")

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from fs_engine import (
    apply_edits,
    build_tree,
    create_directory,
    list_directory,
    move_path,
    read_text,
    search_files,
    stat_path,
    write_text,
)
from sandbox import (
    AllowedRoots,
    ConfigurationError,
    FileOperationError,
    PathGuard,
)
from schemas import (
    CreateDirectoryArgs,
    DirectoryTreeArgs,
    EditFileArgs,
    GetFileInfoArgs,
    ListDirectoryArgs,
    MoveFileArgs,
    NoArgs,
    OperationArgs,
    ReadFileArgs,
    ReadMultipleFilesArgs,
    SearchFilesArgs,
    WriteFileArgs,
    input_schema,
)

SERVER_NAME = "secure-filesystem-server"
SERVER_VERSION = "0.2.0"

# Used when no directories are given on the command line
ENV_ALLOWED_DIRS = "SECURE_FS_ALLOWED_DIRS"

USAGE = "Usage: secure-fs-server <allowed-directory> [additional-directories...]"

MULTI_READ_SEPARATOR = "\n---\n"
NO_MATCHES = "No matches found"


def _text_response(data: Any) -> CallToolResult:
    """Create a successful text response."""
    if not isinstance(data, str):
        data = json.dumps(data, indent=2)
    return CallToolResult(content=[TextContent(type="text", text=data)], isError=False)


def _error_response(code: str, message: str, internal_details: str = None) -> CallToolResult:
    """Create a structured error response.

    Logs full details server-side while returning only the message to the client.
    """
    if internal_details:
        logger.error(f"Error {code}: {message} | Details: {internal_details}")
    else:
        logger.error(f"Error {code}: {message}")
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps({"error": code, "message": message}))],
        isError=True,
    )


# Tool handlers


async def _handle_read_file(guard: PathGuard, args: ReadFileArgs) -> CallToolResult:
    path = guard.validate(args.path)
    return _text_response(read_text(path))


async def _handle_read_multiple_files(guard: PathGuard, args: ReadMultipleFilesArgs) -> CallToolResult:
    """Read every path concurrently; one failing path does not affect the others."""

    def read_one(raw_path: str) -> str:
        try:
            content = read_text(guard.validate(raw_path))
        except Exception as e:
            logger.info(f"read_multiple_files: {raw_path} failed: {e}")
            return f"{raw_path}: Error - {e}"
        return f"{raw_path}:\n{content}\n"

    results = await asyncio.gather(*[asyncio.to_thread(read_one, p) for p in args.paths])
    return _text_response(MULTI_READ_SEPARATOR.join(results))


async def _handle_write_file(guard: PathGuard, args: WriteFileArgs) -> CallToolResult:
    path = guard.validate(args.path)
    write_text(guard, path, args.content)
    return _text_response(f"Successfully wrote to {args.path}")


async def _handle_edit_file(guard: PathGuard, args: EditFileArgs) -> CallToolResult:
    path = guard.validate(args.path)
    diff = apply_edits(guard, path, args.edits, dry_run=args.dry_run)
    return _text_response(diff)


async def _handle_create_directory(guard: PathGuard, args: CreateDirectoryArgs) -> CallToolResult:
    path = guard.validate(args.path)
    create_directory(guard, path)
    return _text_response(f"Successfully created directory {args.path}")


async def _handle_list_directory(guard: PathGuard, args: ListDirectoryArgs) -> CallToolResult:
    path = guard.validate(args.path)
    lines = [
        f"{'[DIR]' if is_dir else '[FILE]'} {name}"
        for name, is_dir in list_directory(path)
    ]
    return _text_response("\n".join(lines))


async def _handle_directory_tree(guard: PathGuard, args: DirectoryTreeArgs) -> CallToolResult:
    path = guard.validate(args.path)
    tree = build_tree(guard, path)
    return _text_response([child.to_dict() for child in tree.children])


async def _handle_move_file(guard: PathGuard, args: MoveFileArgs) -> CallToolResult:
    source = guard.validate(args.source)
    destination = guard.validate(args.destination)
    move_path(guard, source, destination)
    return _text_response(f"Successfully moved {args.source} to {args.destination}")


async def _handle_search_files(guard: PathGuard, args: SearchFilesArgs) -> CallToolResult:
    root = guard.validate(args.path)
    matches = search_files(guard, root, args.pattern, args.exclude_patterns)
    return _text_response("\n".join(matches) if matches else NO_MATCHES)


async def _handle_get_file_info(guard: PathGuard, args: GetFileInfoArgs) -> CallToolResult:
    path = guard.validate(args.path)
    return _text_response(stat_path(path).as_lines())


async def _handle_list_allowed_directories(guard: PathGuard, _args: NoArgs) -> CallToolResult:
    roots = "\n".join(str(root) for root in guard.allowed)
    return _text_response(f"Allowed directories:\n{roots}")


Handler = Callable[[PathGuard, Any], Awaitable[CallToolResult]]


@dataclass(frozen=True)
class Operation:
    name: str
    description: str
    args_model: type[OperationArgs]
    handler: Handler


OPERATIONS = {
    op.name: op
    for op in [
        Operation(
            "read_file",
            "Read the complete contents of a file as UTF-8 text. "
            "Only works within allowed directories.",
            ReadFileArgs,
            _handle_read_file,
        ),
        Operation(
            "read_multiple_files",
            "Read several files at once. Each file's content is returned with its path; "
            "a file that cannot be read reports its error without failing the others.",
            ReadMultipleFilesArgs,
            _handle_read_multiple_files,
        ),
        Operation(
            "write_file",
            "Create a new file or completely overwrite an existing file. "
            "The parent directory must exist.",
            WriteFileArgs,
            _handle_write_file,
        ),
        Operation(
            "edit_file",
            "Apply ordered text replacements to a file. Each matchText must occur exactly "
            "once in the file as left by the previous edits. Returns a unified diff; "
            "with dryRun the file is left untouched.",
            EditFileArgs,
            _handle_edit_file,
        ),
        Operation(
            "create_directory",
            "Create a directory, including any missing parents. Succeeds silently if it exists.",
            CreateDirectoryArgs,
            _handle_create_directory,
        ),
        Operation(
            "list_directory",
            "List a directory. Entries are prefixed with [DIR] or [FILE].",
            ListDirectoryArgs,
            _handle_list_directory,
        ),
        Operation(
            "directory_tree",
            "Recursive tree of a directory as JSON. Each entry has name and type "
            "('file' or 'directory'); directories carry a children array.",
            DirectoryTreeArgs,
            _handle_directory_tree,
        ),
        Operation(
            "move_file",
            "Move or rename a file or directory. Fails if the destination exists.",
            MoveFileArgs,
            _handle_move_file,
        ),
        Operation(
            "search_files",
            "Recursively search for files and directories whose name matches a "
            "case-insensitive glob pattern. Returns full paths.",
            SearchFilesArgs,
            _handle_search_files,
        ),
        Operation(
            "get_file_info",
            "Metadata for a file or directory: size, timestamps, type and permissions.",
            GetFileInfoArgs,
            _handle_get_file_info,
        ),
        Operation(
            "list_allowed_directories",
            "List the directories this server is allowed to access.",
            NoArgs,
            _handle_list_allowed_directories,
        ),
    ]
}

TOOL_DEFINITIONS = [
    Tool(name=op.name, description=op.description, inputSchema=input_schema(op.args_model))
    for op in OPERATIONS.values()
]


class OperationDispatcher:
    """Validates arguments, runs the matching handler and builds the response.

    Nothing raised inside a handler escapes dispatch(); every error becomes an
    isError result.
    """

    def __init__(self, guard: PathGuard):
        self.guard = guard

    async def dispatch(self, name: str, arguments: Optional[dict]) -> CallToolResult:
        operation = OPERATIONS.get(name)
        if operation is None:
            return _error_response("unknown_operation", f"Unknown tool: {name}")

        try:
            args = operation.args_model.model_validate(arguments if arguments is not None else {})
        except ValidationError as e:
            return _error_response("schema_validation", f"Invalid arguments for {name}: {e}")

        try:
            return await operation.handler(self.guard, args)
        except FileOperationError as e:
            return _error_response(e.code, str(e))
        except FileNotFoundError as e:
            return _error_response("not_found", "No such file or directory", str(e))
        except OSError as e:
            return _error_response("filesystem_error", e.strerror or str(e), str(e))
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            return _error_response("internal_error", f"Tool execution failed: {name}")


def create_server(dispatcher: OperationDispatcher) -> Server:
    """Build the MCP server around a dispatcher."""
    server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available filesystem tools."""
        return TOOL_DEFINITIONS

    # Arguments are validated by the dispatcher
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict) -> CallToolResult:
        """Route tool calls to the dispatcher."""
        return await dispatcher.dispatch(name, arguments)

    return server


def load_allowed_roots(argv: Sequence[str]) -> AllowedRoots:
    """Allowed roots from the command line, else from SECURE_FS_ALLOWED_DIRS."""
    raw_roots = list(argv)
    if not raw_roots:
        env_value = os.environ.get(ENV_ALLOWED_DIRS, "")
        raw_roots = [d.strip() for d in env_value.split(os.pathsep) if d.strip()]
    return AllowedRoots.from_args(raw_roots)


async def main(argv: Optional[Sequence[str]] = None):
    """Run the MCP server."""
    try:
        allowed = load_allowed_roots(sys.argv[1:] if argv is None else argv)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    server = create_server(OperationDispatcher(PathGuard(allowed)))
    logger.info("Secure MCP Filesystem Server running on stdio")
    logger.info(f"Allowed directories: {[str(root) for root in allowed]}")

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def run():
    """Sync entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
