#!/usr/bin/env python3
"""
TALOSGUARD CLI - Hook Runner & Diagnostics
------------------------------------------
Two audiences share this entry point:

  * the agent framework, which pipes one JSON event into
    ``talosguard hook <command|edit|sync>`` and reads the decision from
    stdout;
  * a human, who runs ``context``, ``validate`` or ``state`` to see what
    the guard sees.

Hook invocations always exit 0. A failure of the guard itself must never
look like a denial, so every hook error is logged and swallowed.
"""

import sys
import json
import logging
import argparse
from pathlib import Path
from typing import IO, Optional

from rich.logging import RichHandler

from talosguard.cli.formatter import GuardFormatter, console
from talosguard.core.config import GuardConfig
from talosguard.core.engine import GuardEngine, summarize
from talosguard.core.models import HookEvent, PRE_TOOL_USE
from talosguard.state.session import SessionStore

logger = logging.getLogger("talosguard.cli")

HOOK_KINDS = ("command", "edit", "sync")


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )


def run_hook(kind: str, engine: Optional[GuardEngine] = None,
             stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None,
             cwd: Optional[str] = None) -> int:
    """
    Reads one event, writes at most one decision. Allow is silent: the
    framework's own permission flow continues untouched.
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    try:
        try:
            payload = json.loads(stdin.read())
        except json.JSONDecodeError:
            # Not our event shape; never block on it
            return 0

        event = HookEvent.parse(payload)
        engine = engine or GuardEngine.from_env()

        if kind == "sync":
            report = engine.handle_post_command(event, cwd)
            if report is not None:
                GuardFormatter().print_sync_report(report)
            return 0

        if kind == "command":
            decision = engine.handle_command(event, cwd)
        else:
            decision = engine.handle_edit(event, cwd)

        if not decision.is_allow:
            stdout.write(json.dumps(decision.to_hook_output(PRE_TOOL_USE)) + "\n")
            stdout.flush()
    except Exception as e:
        logger.error(f"Hook error: {type(e).__name__}: {e}")
    return 0


class TalosGuardCLI:
    """Translates command-line arguments into engine calls."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="talosguard",
            description="talosguard - GitOps policy gate for Talos/Omni clusters",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self._setup_args()

    def _setup_args(self):
        self.parser.add_argument("-v", "--version", action="version", version="talosguard v0.1.0")
        self.parser.add_argument("--verbose", action="store_true", help="Debug logging on stderr")
        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        hook_parser = subparsers.add_parser("hook", help="Run as an agent hook (JSON on stdin)")
        hook_parser.add_argument("kind", choices=HOOK_KINDS,
                                 help="command: Bash gate, edit: YAML gate, sync: post-push watcher")

        context_parser = subparsers.add_parser("context", help="Show the detected cluster context")
        context_parser.add_argument("path", nargs="?", default=".", help="Directory inside the repo")

        validate_parser = subparsers.add_parser("validate", help="Validate YAML files as if they were being written")
        validate_parser.add_argument("paths", nargs="+", help="YAML files to check")

        state_parser = subparsers.add_parser("state", help="Show the session state")
        state_parser.add_argument("--reset", action="store_true", help="Clear the session state")

    def _context(self, engine: GuardEngine, args: argparse.Namespace) -> int:
        context = engine.detector.detect(Path(args.path))
        if context is None:
            console.print(f"[bold yellow]⚠️  No GitOps repository found above '{args.path}'.[/bold yellow]")
            return 1
        GuardFormatter().print_context(context)
        return 0

    def _validate(self, engine: GuardEngine, args: argparse.Namespace) -> int:
        formatter = GuardFormatter()
        all_errors = []
        for raw in args.paths:
            path = Path(raw)
            try:
                errors = engine.validate_file(path)
            except OSError as e:
                console.print(f"[bold red]Error:[/bold red] cannot read '{raw}': {e}")
                return 1
            formatter.print_diagnostics(errors, raw)
            all_errors.extend(errors)

        summary = summarize(all_errors)
        console.print(
            f"\n[bold white]Summary:[/bold white] "
            f"[red]{summary['errors']} errors[/red], [yellow]{summary['warnings']} warnings[/yellow]"
        )
        return 1 if summary["errors"] else 0

    def _state(self, config: GuardConfig, args: argparse.Namespace) -> int:
        store = SessionStore(config.state_file)
        if args.reset:
            if not store.reset():
                console.print(f"[bold red]Could not reset {config.state_file}[/bold red]")
                return 1
            console.print(f"[green]Session state cleared: {config.state_file}[/green]")
            return 0
        GuardFormatter().print_state(store.load(), str(config.state_file))
        return 0

    def run(self, argv=None) -> int:
        args = self.parser.parse_args(argv)
        config = GuardConfig.from_env()
        setup_logging("DEBUG" if args.verbose else config.log_level)

        if args.command == "hook":
            return run_hook(args.kind, GuardEngine(config))
        if args.command == "context":
            return self._context(GuardEngine(config), args)
        if args.command == "validate":
            return self._validate(GuardEngine(config), args)
        if args.command == "state":
            return self._state(config, args)

        self.parser.print_help()
        return 0


def main():
    try:
        sys.exit(TalosGuardCLI().run())
    except KeyboardInterrupt:
        console.print("\n[bold red]Terminated by user.[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
