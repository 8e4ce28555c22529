from __future__ import annotations

import argparse
import datetime as dt
import json
import sys
from pathlib import Path
from typing import Any

# Ensure src on path before importing module under test
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import adr  # type: ignore
import adr_workflow  # type: ignore


INDEX = """\
[permissions]
add_files = "yes"

[feature]

[feature.ADR-001]
title = "First"
status = "Accepted"
file = "feature/first.md"

[docs]
active = false
"""


def _write_index(root: Path, text: str = INDEX) -> None:
    (root / "adr-index.toml").write_text(text, encoding="utf-8")


def test_command_registration_and_help(monkeypatch):
    monkeypatch.setattr(adr, "_COMMANDS", dict(adr._COMMANDS))

    @adr.command(add_args=lambda p: p.add_argument("x", type=int))
    def cmd_inc(args: argparse.Namespace, session: adr.Session) -> dict[str, Any]:
        """Increment x"""
        return {"x": args.x + 1}

    p = adr.build_subcommand_parser(prog="adr")
    sub = [a for a in p._actions if isinstance(a, argparse._SubParsersAction)][0]
    for name in ("new", "list", "status", "validate", "merge", "cleanup", "git", "gh", "inc"):
        assert name in sub.choices
    assert sub.choices["inc"].description.startswith("Increment x")


def test_package_reexports_module_version():
    assert adr_workflow.__version__ == adr.__version__
    assert adr_workflow.dispatch is adr.dispatch


def test_help_and_no_args_print_usage(capsys):
    assert adr.dispatch([]) == 0
    assert "COMMAND" in capsys.readouterr().out
    assert adr.dispatch(["help"]) == 0
    assert "validate" in capsys.readouterr().out


def test_unknown_command_exits_one(capsys):
    assert adr.dispatch(["frobnicate"]) == 1
    err = capsys.readouterr().err
    assert "Unknown command: frobnicate" in err


def test_end_to_end_new_validate_list(tmp_path, capsys):
    _write_index(tmp_path, '[permissions]\nadd_files = "ask"\n')

    rc = adr.dispatch(["new", "feat", "My Decision", "--root", str(tmp_path)])
    assert rc == 0
    out = capsys.readouterr().out
    assert "Created branches/feat/my-decision.md" in out

    target = tmp_path / "branches" / "feat" / "my-decision.md"
    text = target.read_text(encoding="utf-8")
    assert "Status: Proposed" in text
    assert dt.date.today().isoformat() in text

    assert adr.dispatch(["validate", "--root", str(tmp_path)]) == 0
    assert "Validation complete" in capsys.readouterr().out

    assert adr.dispatch(["list", "--root", str(tmp_path)]) == 0
    assert capsys.readouterr().out == ""
    # index untouched
    assert (tmp_path / "adr-index.toml").read_text(encoding="utf-8") == '[permissions]\nadd_files = "ask"\n'


def test_new_twice_fails_without_overwrite(tmp_path, capsys):
    assert adr.dispatch(["new", "feature", "Use Postgres", "--root", str(tmp_path)]) == 0
    target = tmp_path / "branches" / "feature" / "use-postgres.md"
    target.write_text("edited by hand\n", encoding="utf-8")
    capsys.readouterr()

    assert adr.dispatch(["new", "feature", "Use Postgres", "--root", str(tmp_path)]) == 1
    assert "already exists" in capsys.readouterr().err
    assert target.read_text(encoding="utf-8") == "edited by hand\n"


def test_new_dry_run_writes_nothing(tmp_path, capsys):
    rc = adr.dispatch(["new", "process", "Weekly Review", "--dry-run", "--json", "--root", str(tmp_path)])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"dry_run": True, "target": "branches/process/weekly-review.md"}
    assert not (tmp_path / "branches").exists()


def test_new_warns_on_unknown_category(tmp_path, capsys):
    assert adr.dispatch(["new", "feat", "Thing", "--root", str(tmp_path)]) == 0
    assert "warning: category 'feat'" in capsys.readouterr().err


def test_list_prints_identifiers(tmp_path, capsys):
    _write_index(tmp_path)
    assert adr.dispatch(["list", "--root", str(tmp_path)]) == 0
    assert capsys.readouterr().out.splitlines() == ["ADR-001"]


def test_list_without_index_notes_and_exits_zero(tmp_path, capsys):
    assert adr.dispatch(["list", "--root", str(tmp_path)]) == 0
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "No ADR index" in captured.err


def test_status_text_and_json(tmp_path, capsys):
    _write_index(tmp_path)
    (tmp_path / "merged").mkdir()
    (tmp_path / "merged" / "old.md").write_text("x", encoding="utf-8")

    assert adr.dispatch(["status", "--root", str(tmp_path)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == ["active_sections: 1", "records: 1", "merged: 1", "active: feature"]

    assert adr.dispatch(["status", "--root", str(tmp_path), "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data == {"active_sections": 1, "records": 1, "merged": 1, "active": ["feature"]}


def test_status_without_index_defaults_to_zero(tmp_path, capsys):
    assert adr.dispatch(["status", "--root", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "records: 0" in out
    assert "active: None" in out


def test_status_table_fallback_plain(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr(adr, "_HAVE_RICH", False)
    monkeypatch.setattr(adr, "_HAVE_TABULATE", False)
    _write_index(tmp_path)

    assert adr.dispatch(["status", "--root", str(tmp_path), "--table", "--no-color"]) == 0
    out = capsys.readouterr().out
    assert "active_sections" in out and "merged" in out
    assert "feature" in out


def test_validate_reports_missing_file(tmp_path, capsys):
    _write_index(tmp_path)
    assert adr.dispatch(["validate", "--root", str(tmp_path)]) == 1
    assert "branches/feature/first.md" in capsys.readouterr().err


def test_validate_without_index_fails(tmp_path, capsys):
    assert adr.dispatch(["validate", "--root", str(tmp_path)]) == 1
    assert "No ADR index" in capsys.readouterr().err


def test_malformed_index_is_reported(tmp_path, capsys):
    _write_index(tmp_path, "[permissions\n")
    assert adr.dispatch(["list", "--root", str(tmp_path)]) == 1
    assert "adr-index.toml" in capsys.readouterr().err


def test_merge_missing_source_does_not_create_merged(tmp_path, capsys):
    rc = adr.dispatch(["merge", "branches/feature/nope.md", "--root", str(tmp_path)])
    assert rc == 1
    assert "not found" in capsys.readouterr().err
    assert not (tmp_path / "merged").exists()


def test_merge_under_never_leaves_source(tmp_path, capsys):
    _write_index(tmp_path, '[permissions]\nadd_files = "never"\n')
    source = tmp_path / "branches" / "feature" / "x.md"
    source.parent.mkdir(parents=True)
    source.write_text("# X\n", encoding="utf-8")
    calls: list[list[str]] = []

    def runner(argv, cwd=None):
        calls.append(argv)
        return 0

    rc = adr.dispatch(["merge", "branches/feature/x.md", "--root", str(tmp_path)], runner=runner)
    assert rc == 1
    assert calls == []
    assert source.is_file()
    assert not (tmp_path / "merged" / "x.md").exists()
    assert "denied" in capsys.readouterr().err


def test_merge_approved_moves_file(tmp_path, capsys):
    _write_index(tmp_path)
    source = tmp_path / "branches" / "feature" / "x.md"
    source.parent.mkdir(parents=True)
    source.write_text("# X\n", encoding="utf-8")
    calls: list[tuple[list[str], Any]] = []

    def runner(argv, cwd=None):
        calls.append((argv, cwd))
        return 0

    rc = adr.dispatch(["merge", "branches/feature/x.md", "--root", str(tmp_path)], runner=runner)
    assert rc == 0
    assert calls == [(["git", "add", "--", "branches/feature/x.md"], tmp_path)]
    assert not source.exists()
    assert (tmp_path / "merged" / "x.md").read_text(encoding="utf-8") == "# X\n"
    captured = capsys.readouterr()
    assert "Merged merged/x.md" in captured.out
    assert "update the status of x.md" in captured.err


def test_merge_ask_declined(tmp_path):
    _write_index(tmp_path, '[permissions]\nadd_files = "ask"\n')
    source = tmp_path / "branches" / "feature" / "x.md"
    source.parent.mkdir(parents=True)
    source.write_text("# X\n", encoding="utf-8")

    def runner(argv, cwd=None):
        raise AssertionError("git must not run")

    rc = adr.dispatch(
        ["merge", str(source), "--root", str(tmp_path)], confirm=lambda q: False, runner=runner
    )
    assert rc == 1
    assert source.is_file()


def test_git_passthrough_returns_tool_status(tmp_path):
    _write_index(tmp_path, '[permissions]\nvcs = "yes"\n')
    calls: list[list[str]] = []

    def runner(argv, cwd=None):
        calls.append(argv)
        return 5

    rc = adr.dispatch(["git", "--root", str(tmp_path), "vcs", "status", "--short"], runner=runner)
    assert rc == 5
    assert calls == [["git", "status", "--short"]]


def test_gh_passthrough_denied(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(adr.shutil, "which", lambda name: f"/usr/bin/{name}")
    _write_index(tmp_path, '[permissions]\ncreate_pr = "never"\n')

    def runner(argv, cwd=None):
        raise AssertionError("gh must not run")

    rc = adr.dispatch(
        ["gh", "--root", str(tmp_path), "create_pr", "pr", "create", "--fill"], runner=runner
    )
    assert rc == 1
    assert "gh pr create --fill" in capsys.readouterr().err


def test_registry_changes_do_not_leak_between_tests(monkeypatch):
    monkeypatch.setattr(adr, "_COMMANDS", dict(adr._COMMANDS))
    assert "inc" not in adr._COMMANDS

    @adr.command("inc")
    def cmd_other(args: argparse.Namespace, session: adr.Session) -> None:
        """Registered again under the same name"""


def test_list_skips_inactive_sections(tmp_path, capsys):
    _write_index(tmp_path, "[docs]\nactive = false\n\n[docs.ADR-9]\ntitle = \"Old\"\n\n[feature.ADR-1]\ntitle = \"New\"\n")
    assert adr.dispatch(["list", "--root", str(tmp_path)]) == 0
    assert capsys.readouterr().out.splitlines() == ["ADR-1"]


def test_merge_auto_approved_git_failure_is_not_a_denial(tmp_path, capsys):
    _write_index(tmp_path, '[permissions]\nadd_files = "yes"\n')
    source = tmp_path / "branches" / "f" / "x.md"
    source.parent.mkdir(parents=True)
    source.write_text("# X\n", encoding="utf-8")

    rc = adr.dispatch(["merge", "branches/f/x.md", "--root", str(tmp_path)], runner=lambda argv, cwd=None: 1)
    assert rc == 1
    err = capsys.readouterr().err
    assert "git add exited with status 1" in err
    assert "not approved" not in err
    assert source.is_file()


def test_keyboard_interrupt_exits_130(tmp_path, capsys):
    _write_index(tmp_path, '[permissions]\nadd_files = "ask"\n')
    source = tmp_path / "branches" / "feature" / "x.md"
    source.parent.mkdir(parents=True)
    source.write_text("# X\n", encoding="utf-8")

    def interrupted(question: str) -> bool:
        raise KeyboardInterrupt

    rc = adr.dispatch(["merge", "branches/feature/x.md", "--root", str(tmp_path)], confirm=interrupted)
    assert rc == 130
    assert "Interrupted." in capsys.readouterr().err
    assert source.is_file()


def test_trace_prints_traceback(tmp_path, capsys):
    _write_index(tmp_path, '[permissions]\nvcs = "yes"\n')

    def broken(argv, cwd=None):
        raise RuntimeError("runner exploded")

    rc = adr.dispatch(["git", "--root", str(tmp_path), "vcs", "status"], runner=broken)
    assert rc == 1
    err = capsys.readouterr().err
    assert "Error: RuntimeError: runner exploded" in err
    assert "Traceback" not in err

    rc = adr.dispatch(["git", "--trace", "--root", str(tmp_path), "vcs", "status"], runner=broken)
    assert rc == 1
    err = capsys.readouterr().err
    assert "Traceback (most recent call last)" in err
    assert "RuntimeError: runner exploded" in err


def test_status_yaml_and_pretty(tmp_path, capsys):
    import yaml

    _write_index(tmp_path)

    assert adr.dispatch(["status", "--root", str(tmp_path), "--yaml"]) == 0
    data = yaml.safe_load(capsys.readouterr().out)
    assert data == {"active_sections": 1, "records": 1, "merged": 0, "active": ["feature"]}

    assert adr.dispatch(["status", "--root", str(tmp_path), "--pretty"]) == 0
    out = capsys.readouterr().out
    assert '\n  "active_sections": 1' in out
    assert json.loads(out)["active"] == ["feature"]


def test_index_with_invalid_utf8_is_a_format_error(tmp_path, capsys):
    (tmp_path / "adr-index.toml").write_bytes(b"\xff\xfe[permissions]\n")
    assert adr.dispatch(["list", "--root", str(tmp_path)]) == 1
    err = capsys.readouterr().err
    assert "Error: adr-index.toml: not valid UTF-8" in err
    assert "UnicodeDecodeError" not in err
