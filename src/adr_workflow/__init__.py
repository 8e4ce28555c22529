from __future__ import annotations

"""
adr_workflow package: thin re-export of the single-source module `adr.py`.

This package exists for users who prefer importing a namespaced package over
the flat `adr` module. The only source of logic is `src/adr.py`.
"""

from adr import (
    AdrError,
    AdrExistsError,
    AdrFileMissingError,
    AdrIndex,
    AdrRecord,
    AdrStatus,
    CommandExecutor,
    Decision,
    ExternalCommandError,
    IndexFormatError,
    IndexMissingError,
    IndexSection,
    PermissionDeniedError,
    PermissionGate,
    Policy,
    Reporter,
    Session,
    Workspace,
    __version__,
    adr_status,
    build_subcommand_parser,
    cleanup_docs,
    command,
    confirm_tty,
    decide,
    dispatch,
    dvdt_run,
    hosting_executor,
    list_adrs,
    load_index,
    merge_adr,
    new_adr,
    open_session,
    parse_index,
    render,
    slugify,
    validate_adrs,
    vcs_executor,
)

__all__ = [
    "command",
    "build_subcommand_parser",
    "dispatch",
    "render",
    "dvdt_run",
    "AdrError",
    "IndexMissingError",
    "IndexFormatError",
    "AdrFileMissingError",
    "AdrExistsError",
    "PermissionDeniedError",
    "ExternalCommandError",
    "Reporter",
    "AdrStatus",
    "AdrRecord",
    "IndexSection",
    "AdrIndex",
    "load_index",
    "parse_index",
    "Workspace",
    "Policy",
    "Decision",
    "decide",
    "confirm_tty",
    "PermissionGate",
    "CommandExecutor",
    "vcs_executor",
    "hosting_executor",
    "Session",
    "open_session",
    "slugify",
    "new_adr",
    "list_adrs",
    "adr_status",
    "validate_adrs",
    "merge_adr",
    "cleanup_docs",
    "__version__",
]
