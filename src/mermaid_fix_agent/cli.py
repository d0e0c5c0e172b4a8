"""
Command-line interface for the repair agent.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from mermaid_fix_agent.agent import RepairOrchestrator
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.encoder import encode_stream, failure_payload
from mermaid_fix_agent.errors import InputRejectedError, MermaidFixError
from mermaid_fix_agent.logging import setup_logging
from mermaid_fix_agent.models import FinalOutcome, RepairRequest
from mermaid_fix_agent.validation import DiagramValidator, apply_lint_fixes, sanitize_mermaid

console = Console()
err_console = Console(stderr=True)


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Repair malformed Mermaid diagrams with a validator-guided model loop",
        prog="mermaid-fix",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="YAML config file (environment variables fill the rest)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate a diagram file")
    validate_parser.add_argument("file", help="Diagram file, or '-' for stdin")
    validate_parser.add_argument(
        "--autofix",
        action="store_true",
        help="Apply mechanical lint fixes and print the result",
    )
    validate_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    # Fix command
    fix_parser = subparsers.add_parser("fix", help="Repair a diagram file")
    fix_parser.add_argument("file", help="Diagram file, or '-' for stdin")
    fix_parser.add_argument("-e", "--error", help="Error message reported by the renderer")
    fix_parser.add_argument("--backend", help="Model backend (openai, anthropic)")
    fix_parser.add_argument("--model", help="Model name")
    fix_parser.add_argument("--max-steps", type=int, dest="max_steps", help="Step limit")
    fix_parser.add_argument(
        "--tool-calling",
        choices=["native", "json"],
        dest="tool_calling",
        help="Native tool calls or JSON-in-text emulation",
    )
    fix_parser.add_argument(
        "--json",
        action="store_true",
        help="Stream NDJSON events to stdout",
    )
    fix_parser.add_argument(
        "-o",
        "--output",
        help="Write the fixed diagram to this file",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port")

    args = parser.parse_args(argv)

    # Setup logging based on verbosity
    if getattr(args, "verbose", False):
        setup_logging("DEBUG", stream=sys.stderr)
    else:
        setup_logging("WARNING", stream=sys.stderr)

    if args.command == "validate":
        asyncio.run(cmd_validate(args))
    elif args.command == "fix":
        asyncio.run(cmd_fix(args))
    elif args.command == "serve":
        cmd_serve(args)
    else:
        parser.print_help()


def _load_config(args: argparse.Namespace, **overrides: Any) -> RepairConfig:
    """Config from an optional YAML file, the environment and CLI flags."""
    data: dict[str, Any] = {}
    if getattr(args, "config", None):
        with open(args.config) as f:
            data = yaml.safe_load(f) or {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return RepairConfig.from_env(**data)


def _read_source(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    source = Path(path)
    if not source.exists():
        err_console.print(f"[red]File not found: {path}[/red]")
        sys.exit(2)
    return source.read_text(encoding="utf-8")


async def cmd_validate(args: argparse.Namespace) -> None:
    """Validate a diagram file."""
    config = _load_config(args)
    validator = DiagramValidator.from_config(config)
    code = _read_source(args.file)

    try:
        result = await validator.validate(code)
    except MermaidFixError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(2)

    fixed: str | None = None
    if args.autofix and not result.is_valid and any(e.fix for e in result.lint_errors):
        fixed = apply_lint_fixes(sanitize_mermaid(code), result.lint_errors)
        result = await validator.validate(fixed)

    if args.json:
        data = result.to_dict()
        if fixed is not None:
            data["fixedCode"] = fixed
        console.print_json(json.dumps(data))
    else:
        if result.is_valid:
            console.print(f"[green]✓[/green] Valid {result.diagram_type or 'diagram'}")
        else:
            console.print("[red]✗[/red] Invalid diagram")
            console.print(result.error_message or "", markup=False)
            if result.lint_errors:
                table = Table(title="Lint findings")
                table.add_column("Rule", style="cyan")
                table.add_column("Line", style="dim")
                table.add_column("Message")
                for lint in result.lint_errors:
                    table.add_row(lint.rule_id, str(lint.line or ""), escape(lint.message))
                console.print(table)
        if fixed is not None:
            console.print(Panel(Syntax(fixed, "text"), title="Autofixed"))

    if not result.is_valid:
        sys.exit(1)


async def cmd_fix(args: argparse.Namespace) -> None:
    """Repair a diagram file."""
    config = _load_config(
        args,
        backend=args.backend,
        model=args.model,
        max_steps=args.max_steps,
        tool_calling=args.tool_calling,
    )
    code = _read_source(args.file)

    try:
        orchestrator = RepairOrchestrator.from_config(config)
    except (MermaidFixError, KeyError) as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(2)

    try:
        run = await orchestrator.start(RepairRequest(code=code, error=args.error))
    except InputRejectedError as e:
        await orchestrator.backend.aclose()
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        if e.validation_error:
            err_console.print(f"[dim]{escape(e.validation_error)}[/dim]")
        sys.exit(2)
    except MermaidFixError as e:
        await orchestrator.backend.aclose()
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(2)

    try:
        if args.json:
            async for line in encode_stream(
                run.events(),
                fallback=lambda exc: failure_payload(run.ctx.entry_error, exc),
            ):
                sys.stdout.write(line)
                sys.stdout.flush()
            outcome = run.outcome
        else:
            with console.status("Repairing diagram..."):
                outcome = await run.collect()
            _print_outcome(outcome)
    finally:
        await orchestrator.backend.aclose()

    if outcome is not None and args.output and outcome.validated:
        Path(args.output).write_text(outcome.fixed_code, encoding="utf-8")
        err_console.print(f"[green]Wrote {args.output}[/green]")

    if outcome is None or not outcome.validated:
        sys.exit(1)


def _print_outcome(outcome: FinalOutcome) -> None:
    status = "[green]validated[/green]" if outcome.validated else "[red]not validated[/red]"
    console.print(
        f"\n[bold]Result:[/bold] {status} "
        f"[dim]({outcome.finish_reason}, {outcome.steps_count} step(s), "
        f"{len(outcome.attempts)} attempt(s), {outcome.usage.total_tokens} tokens)[/dim]"
    )
    if outcome.message:
        console.print(f"[yellow]{escape(outcome.message)}[/yellow]")
    if outcome.validation_error:
        console.print(f"[red]{escape(outcome.validation_error)}[/red]")
    console.print(Panel(Syntax(outcome.fixed_code, "text"), title="Diagram"))
    if outcome.explanation:
        console.print(f"[bold]Explanation:[/bold] {escape(outcome.explanation)}")


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the HTTP service."""
    from mermaid_fix_agent.web.server import run_server

    config = _load_config(args)
    console.print(f"[dim]Serving on http://{args.host}:{args.port} (backend: {config.backend})[/dim]")
    run_server(config=config, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
