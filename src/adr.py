from __future__ import annotations

"""adr: a small workflow tool for Architecture Decision Records.

Features:
- @command registry with docstring-powered help/description
- TOML index (adr-index.toml) with per-operation permission policies
- Permission-gated wrappers around git and gh
- new/list/status/validate/merge/cleanup operations (DVDT style)
- text/JSON/YAML/table renderers (rich → tabulate → fallback)
"""

import argparse
import datetime as _dt
import enum as _enum
import importlib.util as _importlib_util
import inspect
import json
import os
import pathlib as _pathlib
import re
import shutil
import subprocess
import sys
import textwrap
import tomllib
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Callable, Optional, Sequence, TypeVar, cast

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


# ---- Version ----
__version__ = "0.2.0"


"""
Optional renderers are imported lazily in the code paths where they are used
to keep import cost low for plain text output.
"""

_HAVE_RICH = _importlib_util.find_spec("rich") is not None
_HAVE_TABULATE = _importlib_util.find_spec("tabulate") is not None
_HAVE_YAML = _importlib_util.find_spec("yaml") is not None


# =========================================================
# Section: Errors
# =========================================================


class AdrError(Exception):
    """A failure reported to the operator; the process exits with `exit_code`."""

    exit_code = 1


class IndexMissingError(AdrError):
    pass


class IndexFormatError(AdrError):
    pass


class AdrFileMissingError(AdrError):
    pass


class AdrExistsError(AdrError):
    pass


class PermissionDeniedError(AdrError):
    pass


class ExternalCommandError(AdrError):
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


# =========================================================
# Section: Diagnostics (rich → plain stderr)
# =========================================================


class Reporter:
    """
    Human-readable diagnostics on stderr.
    Styled through rich when it is installed and stderr is a terminal.
    """

    _STYLES = {"warning": "yellow", "denied": "bold red", "ok": "green", "note": "dim"}

    def __init__(self, color: bool = True):
        self.color = color
        self._console: Any = None

    def _write(self, kind: str, message: str) -> None:
        line = f"{kind}: {message}" if kind in ("warning", "denied") else message
        if self.color and _HAVE_RICH and sys.stderr.isatty():
            if self._console is None:
                from rich.console import Console

                self._console = Console(stderr=True)
            self._console.print(line, style=self._STYLES[kind], markup=False, highlight=False)
            return
        print(line, file=sys.stderr)

    def warn(self, message: str) -> None:
        self._write("warning", message)

    def deny(self, message: str) -> None:
        self._write("denied", message)

    def ok(self, message: str) -> None:
        self._write("ok", message)

    def note(self, message: str) -> None:
        self._write("note", message)


# =========================================================
# Section: Index store (adr-index.toml)
# =========================================================

INDEX_FILENAME = "adr-index.toml"
TEMPLATE_PATH = _pathlib.Path("templates") / "adr-template.md"
BRANCHES_DIR = "branches"
MERGED_DIR = "merged"
DOCS_DIR = "docs"

# Top-level tables that are not category sections
RESERVED_TABLES = frozenset({"permissions", "cleanup"})
KNOWN_CATEGORIES = ("feature", "architecture", "docs", "process")
ADR_ID_PATTERN = re.compile(r"^adr-\d+(?:-[a-z0-9-]+)?$", re.IGNORECASE)

DEFAULT_SPECIALIZED_DOCS = ("ADR-WORKFLOW.md", "PERMISSIONS.md", "TEMPLATE-GUIDE.md")
DEFAULT_LEGACY_DOCS = ("ADR-INDEX.md", "DECISIONS.md")


class AdrStatus(str, _enum.Enum):
    PROPOSED = "Proposed"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    SUPERSEDED = "Superseded"


_STATUS_VALUES = frozenset(s.value for s in AdrStatus)


@dataclass(frozen=True)
class AdrRecord:
    identifier: str
    category: str
    title: str = ""
    status: str = ""
    file: Optional[str] = None


@dataclass(frozen=True)
class IndexSection:
    name: str
    active: bool
    records: tuple[AdrRecord, ...]


@dataclass(frozen=True)
class AdrIndex:
    path: _pathlib.Path
    sections: tuple[IndexSection, ...]
    permissions: dict[str, Any]
    specialized_docs: tuple[str, ...] = DEFAULT_SPECIALIZED_DOCS
    legacy_docs: tuple[str, ...] = DEFAULT_LEGACY_DOCS

    @property
    def records(self) -> tuple[AdrRecord, ...]:
        return tuple(r for s in self.sections for r in s.records)

    @property
    def active_sections(self) -> tuple[IndexSection, ...]:
        return tuple(s for s in self.sections if s.active)


def _doc_names(table: dict[str, Any], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = table.get(key)
    if value is None:
        return default
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise IndexFormatError(f"[cleanup].{key} must be a list of file names")
    for name in value:
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise IndexFormatError(f"[cleanup].{key}: {name!r} is not a plain file name")
    return tuple(value)


def _parse_record(section: str, identifier: str, table: dict[str, Any]) -> AdrRecord:
    file = table.get("file")
    if file is not None:
        if not isinstance(file, str) or not file:
            raise IndexFormatError(f"{section}.{identifier}.file must be a non-empty string")
        pure = _pathlib.PurePosixPath(file)
        if pure.is_absolute() or ".." in pure.parts:
            raise IndexFormatError(
                f"{section}.{identifier}.file must be relative to {BRANCHES_DIR}/: {file!r}"
            )
    return AdrRecord(
        identifier=identifier,
        category=section,
        title=str(table.get("title", "")),
        status=str(table.get("status", "")),
        file=file,
    )


def parse_index(data: dict[str, Any], path: _pathlib.Path) -> AdrIndex:
    """
    Build an AdrIndex from decoded TOML.
    - [permissions]: operation key -> policy string (validated lazily by the gate)
    - [cleanup]: optional `specialized` / `legacy` file name lists
    - any other table: a category section; sub-tables named like ADR-001 are records
    """
    permissions = data.get("permissions", {})
    if not isinstance(permissions, dict):
        raise IndexFormatError("[permissions] must be a table")
    cleanup = data.get("cleanup", {})
    if not isinstance(cleanup, dict):
        raise IndexFormatError("[cleanup] must be a table")

    seen: dict[str, str] = {}
    sections: list[IndexSection] = []
    for name, table in data.items():
        if name in RESERVED_TABLES or not isinstance(table, dict):
            continue
        active = table.get("active", True)
        if not isinstance(active, bool):
            raise IndexFormatError(f"[{name}].active must be true or false")
        records: list[AdrRecord] = []
        for key, value in table.items():
            if not ADR_ID_PATTERN.match(key):
                continue
            if not isinstance(value, dict):
                raise IndexFormatError(f"{name}.{key} must be a table")
            folded = key.upper()
            if folded in seen:
                raise IndexFormatError(f"duplicate ADR identifier {key} in [{seen[folded]}] and [{name}]")
            seen[folded] = name
            records.append(_parse_record(name, key, value))
        sections.append(IndexSection(name=name, active=active, records=tuple(records)))

    return AdrIndex(
        path=path,
        sections=tuple(sections),
        permissions=dict(permissions),
        specialized_docs=_doc_names(cleanup, "specialized", DEFAULT_SPECIALIZED_DOCS),
        legacy_docs=_doc_names(cleanup, "legacy", DEFAULT_LEGACY_DOCS),
    )


def load_index(path: _pathlib.Path) -> Optional[AdrIndex]:
    """Read the index; None when the file does not exist."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError as e:
        raise IndexFormatError(f"{path.name}: not valid UTF-8 ({e.reason} at byte {e.start})") from e
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise IndexFormatError(f"{path.name}: {e}") from e
    return parse_index(data, path)


@dataclass(frozen=True)
class Workspace:
    """The ADR tree rooted at `root`, with its index loaded once per invocation."""

    root: _pathlib.Path
    index: Optional[AdrIndex]

    @classmethod
    def load(cls, root: str | os.PathLike[str]) -> "Workspace":
        root_path = _pathlib.Path(root)
        return cls(root=root_path, index=load_index(root_path / INDEX_FILENAME))

    @property
    def index_path(self) -> _pathlib.Path:
        return self.root / INDEX_FILENAME

    @property
    def template_path(self) -> _pathlib.Path:
        return self.root / TEMPLATE_PATH

    @property
    def branches_dir(self) -> _pathlib.Path:
        return self.root / BRANCHES_DIR

    @property
    def merged_dir(self) -> _pathlib.Path:
        return self.root / MERGED_DIR

    @property
    def docs_dir(self) -> _pathlib.Path:
        return self.root / DOCS_DIR

    def require_index(self) -> AdrIndex:
        if self.index is None:
            raise IndexMissingError(f"No ADR index found at {self.index_path}")
        return self.index

    def relative(self, path: _pathlib.Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)


# =========================================================
# Section: Permission gate
# =========================================================


class Policy(str, _enum.Enum):
    NEVER = "never"
    ASK = "ask"
    YES = "yes"


class Decision(_enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    PROMPT = "prompt"


def decide(policy: Policy) -> Decision:
    if policy is Policy.YES:
        return Decision.ALLOW
    if policy is Policy.NEVER:
        return Decision.DENY
    return Decision.PROMPT


ConfirmFn = Callable[[str], bool]


def confirm_tty(question: str) -> bool:
    """Ask on the terminal; only a single 'y' or 'Y' counts as yes."""
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip() in ("y", "Y")


class PermissionGate:
    """
    Resolve a permission key from [permissions] to allow / deny / prompt.

    Usage:
        gate = PermissionGate(ws.index, confirm=confirm_tty)
        if gate.evaluate("Stage branches/feature/x.md", "add_files"):
            ...
    """

    def __init__(
        self,
        index: Optional[AdrIndex],
        confirm: ConfirmFn = confirm_tty,
        reporter: Optional[Reporter] = None,
    ):
        self.index = index
        self.confirm = confirm
        self.reporter = reporter or Reporter()

    def resolve(self, key: str, default: Policy | str = Policy.ASK) -> Policy:
        if self.index is None:
            self.reporter.warn(f"no {INDEX_FILENAME} found; asking for '{key}'")
            return Policy.ASK
        raw = self.index.permissions.get(key)
        if raw is None:
            return Policy(default)
        try:
            return Policy(raw)
        except ValueError:
            self.reporter.warn(f"unrecognized permission policy {raw!r} for '{key}'; asking instead")
            return Policy.ASK

    def evaluate(self, label: str, key: str, default: Policy | str = Policy.ASK) -> bool:
        decision = decide(self.resolve(key, default))
        if decision is Decision.ALLOW:
            self.reporter.ok(f"{label}: auto-approved ({key} = yes)")
            return True
        if decision is Decision.DENY:
            self.reporter.deny(f"{label} ({key} = never)")
            return False
        approved = self.confirm(f"{label}?")
        if not approved:
            self.reporter.note(f"{label}: declined")
        return approved


# =========================================================
# Section: Command wrappers (git, gh)
# =========================================================

MISSING_BINARY_STATUS = 127

Runner = Callable[[list[str], Optional[_pathlib.Path]], int]


def run_process(argv: list[str], cwd: Optional[_pathlib.Path] = None) -> int:
    """Run argv, streaming its output through; return the exit status unchanged."""
    try:
        proc = subprocess.run(argv, cwd=str(cwd) if cwd is not None else None, check=False)
    except FileNotFoundError as e:
        raise ExternalCommandError(f"{argv[0]}: command not found", MISSING_BINARY_STATUS) from e
    return proc.returncode


class CommandExecutor:
    """One external tool behind the permission gate."""

    def __init__(
        self,
        binary: str,
        gate: PermissionGate,
        *,
        require_on_path: bool = False,
        runner: Optional[Runner] = None,
        cwd: Optional[_pathlib.Path] = None,
    ):
        self.binary = binary
        self.gate = gate
        self.require_on_path = require_on_path
        self.runner = runner or run_process
        self.cwd = cwd

    def run(self, label: str, key: str, *argv: str) -> int:
        if self.require_on_path and shutil.which(self.binary) is None:
            self.gate.reporter.warn(f"{self.binary} is not installed or not on PATH; skipped: {label}")
            return MISSING_BINARY_STATUS
        if not self.gate.evaluate(label, key):
            raise PermissionDeniedError(f"{label}: not approved ({key})")
        return self.runner([self.binary, *argv], self.cwd)


def vcs_executor(gate: PermissionGate, **kwargs: Any) -> CommandExecutor:
    return CommandExecutor("git", gate, **kwargs)


def hosting_executor(gate: PermissionGate, **kwargs: Any) -> CommandExecutor:
    return CommandExecutor("gh", gate, require_on_path=True, **kwargs)


# =========================================================
# Section: Session (one per invocation)
# =========================================================


@dataclass
class Session:
    workspace: Workspace
    reporter: Reporter
    gate: PermissionGate
    git: CommandExecutor
    gh: CommandExecutor
    confirm: ConfirmFn


def open_session(
    root: str | os.PathLike[str],
    *,
    confirm: Optional[ConfirmFn] = None,
    runner: Optional[Runner] = None,
    color: bool = True,
) -> Session:
    ws = Workspace.load(root)
    reporter = Reporter(color=color)
    confirm = confirm or confirm_tty
    gate = PermissionGate(ws.index, confirm=confirm, reporter=reporter)
    return Session(
        workspace=ws,
        reporter=reporter,
        gate=gate,
        git=vcs_executor(gate, runner=runner, cwd=ws.root),
        gh=hosting_executor(gate, runner=runner, cwd=ws.root),
        confirm=confirm,
    )


# =========================================================
# Section: ADR operations
# =========================================================

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

DEFAULT_TEMPLATE = """\
# {title}

Date: {date}
Status: Proposed
Category: {category}

## Context

What is the issue that motivates this decision?

## Decision

What is the change that we are proposing or doing?

## Consequences

What becomes easier or more difficult because of this change?

## Alternatives Considered

"""


def slugify(text: str) -> str:
    return _NON_ALNUM.sub("-", text.lower()).strip("-")


# ---- new ----


@dataclass(frozen=True)
class NewAdrPlan:
    category: str
    title: str
    target: _pathlib.Path
    template: Optional[_pathlib.Path]
    date: _dt.date


def plan_new_adr(
    ws: Workspace, category: str, title: str, today: Optional[_dt.date] = None
) -> NewAdrPlan:
    slug = slugify(title)
    if not slug:
        raise AdrError(f"Title {title!r} has no letters or digits to build a file name from")
    if not category or slugify(category) != category:
        raise AdrError(f"Category {category!r} must use lowercase letters, digits and hyphens")
    template = ws.template_path if ws.template_path.is_file() else None
    return NewAdrPlan(
        category=category,
        title=title,
        target=ws.branches_dir / category / f"{slug}.md",
        template=template,
        date=today or _dt.date.today(),
    )


def validate_new_adr(plan: NewAdrPlan) -> None:
    if plan.target.exists():
        raise AdrExistsError(f"ADR already exists: {plan.target}")


def render_adr(plan: NewAdrPlan) -> str:
    if plan.template is None:
        return DEFAULT_TEMPLATE.format(
            title=plan.title, date=plan.date.isoformat(), category=plan.category
        )
    text = plan.template.read_text(encoding="utf-8")
    for token, value in (
        ("{{title}}", plan.title),
        ("{{date}}", plan.date.isoformat()),
        ("{{category}}", plan.category),
    ):
        text = text.replace(token, value)
    return text


def execute_new_adr(plan: NewAdrPlan) -> _pathlib.Path:
    plan.target.parent.mkdir(parents=True, exist_ok=True)
    # "x" so a file created since validation is never clobbered
    try:
        with plan.target.open("x", encoding="utf-8") as fh:
            fh.write(render_adr(plan))
    except FileExistsError as e:
        raise AdrExistsError(f"ADR already exists: {plan.target}") from e
    return plan.target


def new_adr(
    ws: Workspace, category: str, title: str, today: Optional[_dt.date] = None
) -> _pathlib.Path:
    """Create branches/<category>/<slug>.md from the template."""
    plan = plan_new_adr(ws, category, title, today)
    validate_new_adr(plan)
    return execute_new_adr(plan)


# ---- list / status ----


def list_adrs(ws: Workspace) -> Optional[list[str]]:
    if ws.index is None:
        return None
    return [r.identifier for s in ws.index.active_sections for r in s.records]


@dataclass(frozen=True)
class StatusReport:
    active_sections: int
    records: int
    merged: int
    active: list[str]


def adr_status(ws: Workspace) -> StatusReport:
    merged = 0
    if ws.merged_dir.is_dir():
        merged = sum(1 for p in ws.merged_dir.iterdir() if p.is_file())
    if ws.index is None:
        return StatusReport(active_sections=0, records=0, merged=merged, active=[])
    active = [s.name for s in ws.index.active_sections]
    return StatusReport(
        active_sections=len(active),
        records=len(ws.index.records),
        merged=merged,
        active=active,
    )


# ---- validate ----


def validate_adrs(ws: Workspace, reporter: Optional[Reporter] = None) -> int:
    """
    Check that every record with a `file` points at an existing file under branches/.
    Stops at the first missing file. Returns the number of files checked.
    """
    reporter = reporter or Reporter()
    index = ws.require_index()
    checked = 0
    for record in index.records:
        if record.status and record.status not in _STATUS_VALUES:
            reporter.warn(f"{record.identifier}: unrecognized status {record.status!r}")
        if record.file is None:
            continue
        if not (ws.branches_dir / record.file).is_file():
            raise AdrFileMissingError(
                f"{record.identifier}: missing file {BRANCHES_DIR}/{record.file}"
            )
        checked += 1
    return checked


# ---- merge ----


@dataclass(frozen=True)
class MergePlan:
    source: _pathlib.Path
    target: _pathlib.Path


def plan_merge(ws: Workspace, path: str | os.PathLike[str]) -> MergePlan:
    source = _pathlib.Path(path)
    if not source.is_absolute():
        source = ws.root / source
    return MergePlan(source=source, target=ws.merged_dir / source.name)


def validate_merge(plan: MergePlan) -> None:
    if not plan.source.is_file():
        raise AdrFileMissingError(f"ADR file not found: {plan.source}")
    if plan.target.exists():
        raise AdrExistsError(f"Already merged: {plan.target}")


def execute_merge(session: Session, plan: MergePlan) -> _pathlib.Path:
    ws = session.workspace
    plan.target.parent.mkdir(parents=True, exist_ok=True)
    rel = ws.relative(plan.source)
    try:
        status = session.git.run(f"Stage {rel}", "add_files", "add", "--", rel)
    except PermissionDeniedError as e:
        raise PermissionDeniedError(f"Not merging {rel}: staging was not approved") from e
    if status != 0:
        raise ExternalCommandError(f"Not merging {rel}: git add exited with status {status}")
    shutil.move(str(plan.source), str(plan.target))
    session.reporter.note(
        f"Remember to update the status of {plan.target.name} in {INDEX_FILENAME}"
    )
    return plan.target


def merge_adr(session: Session, path: str | os.PathLike[str]) -> _pathlib.Path:
    """Stage an ADR with git and move it into merged/."""
    plan = plan_merge(session.workspace, path)
    validate_merge(plan)
    return execute_merge(session, plan)


# ---- cleanup ----


@dataclass(frozen=True)
class CleanupPlan:
    docs_dir: _pathlib.Path
    moves: tuple[tuple[_pathlib.Path, _pathlib.Path], ...]
    deletions: tuple[_pathlib.Path, ...]


def plan_cleanup(ws: Workspace) -> CleanupPlan:
    specialized = ws.index.specialized_docs if ws.index else DEFAULT_SPECIALIZED_DOCS
    legacy = ws.index.legacy_docs if ws.index else DEFAULT_LEGACY_DOCS
    return CleanupPlan(
        docs_dir=ws.docs_dir,
        moves=tuple(
            (ws.root / name, ws.docs_dir / name)
            for name in specialized
            if (ws.root / name).is_file()
        ),
        deletions=tuple(ws.root / name for name in legacy if (ws.root / name).is_file()),
    )


def execute_cleanup(session: Session, plan: CleanupPlan) -> dict[str, list[str]]:
    plan.docs_dir.mkdir(parents=True, exist_ok=True)
    moved: list[str] = []
    deleted: list[str] = []
    kept: list[str] = []
    for src, dst in plan.moves:
        shutil.move(str(src), str(dst))
        moved.append(src.name)
    for path in plan.deletions:
        if session.confirm(f"Delete legacy document {path.name}?"):
            path.unlink()
            deleted.append(path.name)
        else:
            kept.append(path.name)
    return {"moved": moved, "deleted": deleted, "kept": kept}


def cleanup_docs(session: Session) -> dict[str, list[str]]:
    """Move specialized docs into docs/ and offer to delete legacy ones."""
    return execute_cleanup(session, plan_cleanup(session.workspace))


# =========================================================
# Section: DVDT runner (data-returning)
# =========================================================

# DVDT: Discover → Validate → Do → Tell
# - Discover: turn arguments into a Plan
# - Validate: assert preconditions; fail fast (no side effects)
# - Do: perform the filesystem / git work
# - Tell: return structured results for the renderer

P = TypeVar("P")


def dvdt_run(
    args: argparse.Namespace,
    build_plan: Callable[[argparse.Namespace], P],
    validate: Callable[[P], None],
    execute: Callable[[P], Any],
    dry_run_attr: str = "dry_run",
    report_dry_run: Optional[Callable[[P], Any]] = None,  # returns data
    to_output: Optional[Callable[[P, Any], Any]] = None,  # (plan, results) -> data
) -> Any:
    plan = build_plan(args)
    validate(plan)
    if getattr(args, dry_run_attr, False):
        return report_dry_run(plan) if report_dry_run else {"dry_run": True}
    results = execute(plan)
    return to_output(plan, results) if to_output else results


# =========================================================
# Section: Subcommand registry/decorator
# =========================================================

_CommandFn = Callable[[argparse.Namespace, Session], Any]


@dataclass(frozen=True)
class _CmdSpec:
    help: str
    description: Optional[str]
    fn: _CommandFn
    add_args: Optional[Callable[[argparse.ArgumentParser], None]] = None


_COMMANDS: dict[str, _CmdSpec] = {}


def command(
    _fn: Any = None,
    *,
    name: Optional[str] = None,
    help: Optional[str] = None,
    add_args: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> Any:
    """
    Decorator to register a subcommand. Handlers receive (args, session).

    Usage:
        @command                      # cmd_status -> "status"
        def cmd_status(args, session): ...

        @command("git", add_args=_passthrough_args)
        def cmd_git(args, session):
            \"\"\"Run git behind the permission gate\"\"\"
    """
    cmd_name_from_positional = None
    if isinstance(_fn, str) and name is None:
        cmd_name_from_positional = _fn
        _fn = None

    def _register(fn: _CommandFn) -> _CommandFn:
        derived = fn.__name__
        if derived.startswith("cmd_"):
            derived = derived[4:]
        cmd_name = name or cmd_name_from_positional or derived
        if not cmd_name:
            raise ValueError("Command name cannot be empty")
        if cmd_name in _COMMANDS:
            raise ValueError(f"Command '{cmd_name}' is already registered")

        doc = inspect.getdoc(fn)
        if doc:
            summary = doc.splitlines()[0].strip()
            description: Optional[str] = textwrap.dedent(doc)
        else:
            summary = help or cmd_name
            description = help

        _COMMANDS[cmd_name] = _CmdSpec(
            help=help or summary or cmd_name,
            description=description,
            fn=fn,
            add_args=add_args,
        )
        return fn

    if _fn is None:
        return _register
    if callable(_fn):
        return _register(_fn)
    raise TypeError("command decorator expects a function or an optional positional name string")


# =========================================================
# Section: Commands
# =========================================================


def _new_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("category", help=f"Category, e.g. {', '.join(KNOWN_CATEGORIES)}")
    p.add_argument("title", help="Decision title (slugified for the file name)")
    p.add_argument("--dry-run", action="store_true", help="Show the target path and exit")


@command("new", add_args=_new_args)
def cmd_new(args: argparse.Namespace, session: Session) -> Any:
    """Create a new ADR from the template"""
    ws = session.workspace
    if args.category not in KNOWN_CATEGORIES:
        session.reporter.warn(
            f"category '{args.category}' is not one of {', '.join(KNOWN_CATEGORIES)}"
        )

    def _created(plan: NewAdrPlan, path: _pathlib.Path) -> str:
        session.reporter.note(f"Remember to add the new ADR to {INDEX_FILENAME}")
        return f"Created {ws.relative(path)}"

    return dvdt_run(
        args,
        build_plan=lambda a: plan_new_adr(ws, a.category, a.title),
        validate=validate_new_adr,
        execute=execute_new_adr,
        report_dry_run=lambda plan: {"dry_run": True, "target": ws.relative(plan.target)},
        to_output=_created,
    )


@command("list")
def cmd_list(args: argparse.Namespace, session: Session) -> Any:
    """List ADR identifiers from the index"""
    ids = list_adrs(session.workspace)
    if ids is None:
        session.reporter.note(f"No ADR index ({INDEX_FILENAME}) in {session.workspace.root}")
    return ids


@command("status")
def cmd_status(args: argparse.Namespace, session: Session) -> Any:
    """Show section, record and merged-file counts"""
    return adr_status(session.workspace)


@command("validate")
def cmd_validate(args: argparse.Namespace, session: Session) -> Any:
    """Check that every indexed ADR file exists"""
    checked = validate_adrs(session.workspace, session.reporter)
    return f"Validation complete: {checked} file(s) checked"


def _merge_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("path", help="ADR file to merge, e.g. branches/feature/my-decision.md")
    p.add_argument("--dry-run", action="store_true", help="Show the move and exit")


@command("merge", add_args=_merge_args)
def cmd_merge(args: argparse.Namespace, session: Session) -> Any:
    """Stage an ADR with git and move it into merged/"""
    ws = session.workspace
    return dvdt_run(
        args,
        build_plan=lambda a: plan_merge(ws, a.path),
        validate=validate_merge,
        execute=lambda plan: execute_merge(session, plan),
        report_dry_run=lambda plan: {
            "dry_run": True,
            "source": ws.relative(plan.source),
            "target": ws.relative(plan.target),
        },
        to_output=lambda plan, path: f"Merged {ws.relative(path)}",
    )


def _cleanup_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--dry-run", action="store_true", help="Show what would move or be deleted")


@command("cleanup", add_args=_cleanup_args)
def cmd_cleanup(args: argparse.Namespace, session: Session) -> Any:
    """Move specialized docs into docs/ and offer to delete legacy ones"""
    ws = session.workspace
    return dvdt_run(
        args,
        build_plan=lambda a: plan_cleanup(ws),
        validate=lambda plan: None,
        execute=lambda plan: execute_cleanup(session, plan),
        report_dry_run=lambda plan: {
            "move": [src.name for src, _ in plan.moves],
            "delete": [p.name for p in plan.deletions],
        },
    )


def _passthrough_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("key", help="Permission key looked up in [permissions]")
    p.add_argument("tool_args", nargs=argparse.REMAINDER, help="Arguments for the tool")


def _passthrough(executor: CommandExecutor, args: argparse.Namespace) -> None:
    argv = list(args.tool_args)
    if argv and argv[0] == "--":
        argv = argv[1:]
    status = executor.run(" ".join([executor.binary, *argv]), args.key, *argv)
    if status != 0:
        raise ExternalCommandError(f"{executor.binary} did not complete (status {status})", status)


@command("git", add_args=_passthrough_args)
def cmd_git(args: argparse.Namespace, session: Session) -> Any:
    """Run git behind the permission gate"""
    _passthrough(session.git, args)


@command("gh", add_args=_passthrough_args)
def cmd_gh(args: argparse.Namespace, session: Session) -> Any:
    """Run the GitHub CLI behind the permission gate"""
    _passthrough(session.gh, args)


# =========================================================
# Section: Output formatting flags & renderer
# =========================================================


def add_output_format_flags(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Output")
    g.add_argument(
        "--format", choices=["text", "json", "pretty", "yaml", "table"], help="Select output format"
    )
    g.add_argument("--json", action="store_true", help="Compact JSON output")
    g.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    g.add_argument("--yaml", action="store_true", help="YAML output (requires PyYAML)")
    g.add_argument("--table", action="store_true", help="Render as a table")
    g.add_argument("--no-color", action="store_true", help="Disable ANSI colors (rich)")


def _resolve_format(args: argparse.Namespace) -> str:
    fmt = getattr(args, "format", None)
    if fmt:
        return str(fmt)
    for name in ("json", "pretty", "yaml", "table"):
        if getattr(args, name, False):
            return name
    return "text"


def _to_serializable(x: Any) -> Any:
    if is_dataclass(x) and not isinstance(x, type):
        return asdict(cast(Any, x))
    if isinstance(x, (list, tuple)):
        return [_to_serializable(i) for i in x]
    if isinstance(x, dict):
        return {k: _to_serializable(v) for k, v in x.items()}
    if isinstance(x, (_dt.datetime, _dt.date)):
        return x.isoformat()
    if isinstance(x, _pathlib.PurePath):
        return x.as_posix()
    if isinstance(x, _enum.Enum):
        return _to_serializable(x.value)
    return x


def _text_value(v: Any) -> str:
    if isinstance(v, list):
        return ", ".join(str(i) for i in v) if v else "None"
    return str(v)


def _render_text(data: Any) -> None:
    if isinstance(data, dict):
        for k, v in data.items():
            print(f"{k}: {_text_value(v)}")
    elif isinstance(data, list):
        for item in data:
            print(json.dumps(item, ensure_ascii=False) if isinstance(item, dict) else item)
    else:
        print(data)


def _render_table(data: Any, color: bool) -> None:
    if isinstance(data, dict):
        rows: list[dict[str, Any]] = [{k: _text_value(v) for k, v in data.items()}]
    elif isinstance(data, list):
        rows = [r if isinstance(r, dict) else {"value": r} for r in data]
    else:
        rows = [{"value": data}]
    if not rows:
        print("(no rows)")
        return
    cols: list[str] = []
    for r in rows:
        cols.extend(k for k in r if k not in cols)

    if _HAVE_RICH and color:
        from rich.console import Console
        from rich.table import Table as RichTable

        t = RichTable(show_header=True, header_style="bold")
        for c in cols:
            t.add_column(c)
        for r in rows:
            t.add_row(*[str(r.get(c, "")) for c in cols])
        Console().print(t)
        return
    if _HAVE_TABULATE:
        from tabulate import tabulate as _tabulate

        print(_tabulate([[r.get(c, "") for c in cols] for r in rows], headers=cols, tablefmt="github"))
        return
    widths = [max(len(c), *(len(str(r.get(c, ""))) for r in rows)) for c in cols]
    print(" | ".join(c.ljust(w) for c, w in zip(cols, widths)))
    print("-+-".join("-" * w for w in widths))
    for r in rows:
        print(" | ".join(str(r.get(c, "")).ljust(w) for c, w in zip(cols, widths)))


def render(obj: Any, args: argparse.Namespace) -> None:
    if obj is None:
        return
    fmt = _resolve_format(args)
    data = _to_serializable(obj)
    if fmt == "yaml":
        if not _HAVE_YAML:
            print("YAML output requested but PyYAML is not installed.", file=sys.stderr)
            sys.exit(2)
        import yaml as _yaml

        print(_yaml.safe_dump(data, sort_keys=False, allow_unicode=True), end="")
        return
    if fmt == "table":
        _render_table(data, color=not getattr(args, "no_color", False))
        return
    if fmt == "pretty":
        print(json.dumps(data, indent=2, ensure_ascii=False))
        return
    if fmt == "json":
        print(json.dumps(data, separators=(",", ":"), ensure_ascii=False))
        return
    _render_text(data)


# =========================================================
# Section: Subcommand parser & dispatcher
# =========================================================


def add_workspace_flags(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Workspace")
    g.add_argument(
        "--root",
        metavar="DIR",
        default=os.environ.get("ADR_ROOT", "."),
        help=f"Directory holding {INDEX_FILENAME}, branches/ and merged/ (env: ADR_ROOT)",
    )


def add_debug_flags(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Debugging")
    g.add_argument("--trace", action="store_true", help="On error, print full traceback")


def build_subcommand_parser(
    prog: str = "adr",
    description: Optional[str] = None,
    epilog: Optional[str] = None,
) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=prog,
        description=description or "Create, list, validate and merge Architecture Decision Records.",
        epilog=epilog,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    sub = p.add_subparsers(dest="cmd", metavar="COMMAND", required=True)
    for name, spec in _COMMANDS.items():
        sp = sub.add_parser(name, help=spec.help, description=spec.description or spec.help)
        if spec.add_args:
            spec.add_args(sp)
        add_workspace_flags(sp)
        add_output_format_flags(sp)
        add_debug_flags(sp)
        sp.set_defaults(_fn=spec.fn)
    return p


def dispatch(
    argv: Optional[Sequence[str]] = None,
    *,
    confirm: Optional[ConfirmFn] = None,
    runner: Optional[Runner] = None,
) -> int:
    argv = list(argv) if argv is not None else sys.argv[1:]
    prog_name = os.path.basename(sys.argv[0]) or "adr"
    p = build_subcommand_parser(prog=prog_name)
    if not argv or argv[0] == "help":
        p.print_help()
        return 0
    if not argv[0].startswith("-") and argv[0] not in _COMMANDS:
        print(f"Unknown command: {argv[0]}", file=sys.stderr)
        p.print_usage(sys.stderr)
        return 1
    args = p.parse_args(argv)
    try:
        session = open_session(args.root, confirm=confirm, runner=runner, color=not args.no_color)
        fn = cast(_CommandFn, getattr(args, "_fn"))
        result = fn(args, session)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130  # standard SIGINT exit
    except SystemExit:
        raise
    except AdrError as e:
        if args.trace:
            import traceback

            traceback.print_exc()
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except Exception as e:
        if args.trace:
            import traceback

            traceback.print_exc()
        else:
            print(f"Error: {e.__class__.__name__}: {e}", file=sys.stderr)
        return 1
    render(result, args)
    return 0


if __name__ == "__main__":
    raise SystemExit(dispatch())
