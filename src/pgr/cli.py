from __future__ import annotations

import argparse
import logging
from functools import partial
from pathlib import Path
from typing import Never, Sequence

import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

from polyglot_runner import ExecutionOutcome, ExecutionRequest, Language, Orchestrator, RunnerPolicy
from polyglot_runner.execution.capabilities import toolchain_report
from polyglot_runner.execution.types import EventType
from polyglot_runner.server import create_app
from polyglot_runner.templates import starter_template

_CONSOLE = Console(no_color=False)
_ERR_CONSOLE = Console(stderr=True)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m pgr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for polyglot-runner.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m pgr",
        description=(
            "polyglot-runner CLI\n"
            "Compile and run Python, C, C++ and Java snippets under time and resource limits."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m pgr run hello.py\n"
            "  python -m pgr run Main.java\n"
            "  python -m pgr run snippet.txt --language cpp\n"
            "  python -m pgr languages\n"
            "  python -m pgr template c > hello.c\n"
            "  python -m pgr serve --port 8000"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a policy TOML file.\n"
            "Keys missing from the file fall back to the bundled defaults."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity written to stderr (default: WARNING).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run one source file and stream its output.",
        description=(
            "Validate, compile (C, C++, Java) and run a source file.\n"
            "Output is streamed as the program writes it."
        ),
        epilog=(
            "Examples:\n"
            "  python -m pgr run hello.c\n"
            "  python -m pgr run script --language python --buffered"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("path", help="Source file to run.")
    run_cmd.add_argument(
        "--language",
        choices=[language.value for language in Language],
        help="Language of the file (default: inferred from the extension).",
    )
    run_cmd.add_argument(
        "--buffered",
        action="store_true",
        help="Print output only after the program finishes.",
    )

    serve_cmd = sub.add_parser(
        "serve",
        help="Start the HTTP and WebSocket server.",
        description=(
            "Serve POST /api/execute and the /ws/execute streaming channel.\n"
            "Also exposes /api/languages and /api/snippets."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve_cmd.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")

    sub.add_parser(
        "languages",
        help="List supported languages and toolchain availability.",
        description="Show each language with its compiler/runtime and whether they were found.",
        formatter_class=_HELP_FORMATTER,
    )

    template_cmd = sub.add_parser(
        "template",
        help="Print the starter program for a language.",
        description="Print a hello-world program for the given language.",
        formatter_class=_HELP_FORMATTER,
    )
    template_cmd.add_argument("language", choices=[language.value for language in Language])

    return parser


def _configure_logging(level: str) -> None:
    """Send log records to stderr through Rich.

    Example:
        ```python
        _configure_logging("INFO")
        ```
    """
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=_ERR_CONSOLE, show_path=False)],
        force=True,
    )


def build_policy(args: argparse.Namespace) -> RunnerPolicy:
    """Load the policy named by `--config`, or the defaults.

    Example:
        ```python
        policy = build_policy(args)
        ```
    """
    if args.config:
        return RunnerPolicy.from_file(args.config)
    return RunnerPolicy()


def infer_language(path: Path, orchestrator: Orchestrator) -> Language | None:
    """Guess the language from a file extension.

    Example:
        ```python
        infer_language(Path("Main.java"), orchestrator)  # Language.JAVA
        ```
    """
    suffix = path.suffix.lower()
    for language, descriptor in orchestrator.descriptors.items():
        if descriptor.source_extension == suffix:
            return language
    return None


def _print_summary(outcome: ExecutionOutcome) -> None:
    """Render the final outcome panel.

    Example:
        ```python
        _print_summary(outcome)
        ```
    """
    if outcome.success:
        _CONSOLE.print(
            Panel.fit(f"Completed in {outcome.execution_time_ms} ms", style="bold green")
        )
        return
    kind = outcome.failure_kind.value if outcome.failure_kind else "Failure"
    _CONSOLE.print(
        Panel.fit(f"{kind} after {outcome.execution_time_ms} ms", style="bold red")
    )


def _run_file(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    """Handle `pgr run`.

    Example:
        ```python
        code = _run_file(args, orchestrator)
        ```
    """
    path = Path(args.path)
    if not path.is_file():
        _CONSOLE.print(Panel.fit(f"No such file: {path}", style="bold red"))
        return 1
    language = Language(args.language) if args.language else infer_language(path, orchestrator)
    if language is None:
        _CONSOLE.print(
            Panel.fit(f"Cannot infer language of '{path.name}'; pass --language", style="bold red")
        )
        return 1

    try:
        source_code = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        _CONSOLE.print(Panel.fit(f"'{path.name}' is not valid UTF-8 text", style="bold red"))
        return 1

    request = ExecutionRequest(language=language.value, source_code=source_code)
    if args.buffered:
        outcome = orchestrator.execute(request)
        if outcome.stdout:
            _CONSOLE.out(outcome.stdout, end="", highlight=False)
        if outcome.stderr:
            _ERR_CONSOLE.out(outcome.stderr, end="", style="red", highlight=False)
    else:
        final: ExecutionOutcome | None = None
        for event in orchestrator.stream(request):
            if event.type is EventType.OUTPUT:
                _CONSOLE.out(event.data, end="", highlight=False)
            elif event.type is EventType.ERROR:
                _ERR_CONSOLE.out(event.data, end="", style="red", highlight=False)
            elif event.type is EventType.COMPLETE:
                final = event.outcome
        if final is None:
            raise RuntimeError("execution stream ended without a complete event")
        outcome = final

    _print_summary(outcome)
    return 0 if outcome.success else 1


def _print_languages(orchestrator: Orchestrator) -> None:
    """Render supported languages in a rich table.

    Example:
        ```python
        _print_languages(orchestrator)
        ```
    """
    descriptors = orchestrator.descriptors
    table = Table(title="Languages")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Extension")
    table.add_column("Compiler")
    table.add_column("Runtime")
    table.add_column("Available")
    for caps in toolchain_report(descriptors, orchestrator.policy.search_path):
        descriptor = descriptors[caps.language]
        table.add_row(
            caps.language.value,
            descriptor.display_name,
            descriptor.source_extension,
            caps.compiler or "-",
            caps.runtime or "(native)",
            "[green]yes[/green]" if caps.available else "[red]no[/red]",
        )
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `pgr` CLI command handler.

    Example:
        ```python
        code = main(["run", "hello.py"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.log_level)

    if args.command == "template":
        _CONSOLE.out(starter_template(args.language), end="", highlight=False)
        return 0

    try:
        policy = build_policy(args)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"Invalid config: {exc}", style="bold red"))
        return 2

    if args.command == "serve":
        uvicorn.run(
            create_app(policy),
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
        )
        return 0

    orchestrator = Orchestrator(policy)
    if args.command == "run":
        return _run_file(args, orchestrator)
    if args.command == "languages":
        _print_languages(orchestrator)
        return 0

    parser.error("Unhandled command")
    return 2

