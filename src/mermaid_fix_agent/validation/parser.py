"""
Authoritative Mermaid parsers.

The validator delegates the real syntax check to a ``DiagramParser``. The
default runs the official mermaid-cli (``mmdc``) in a subprocess; tests and
embedders can plug in any callable with ``CallableParser``.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import re
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from mermaid_fix_agent.errors import ParserUnavailableError
from mermaid_fix_agent.logging import get_logger

logger = get_logger("validation.parser")

_LINE_MENTION = re.compile(r"line\s+(\d+)", re.IGNORECASE)
_STACK_FRAME = re.compile(r"^\s+at\s")


@dataclass
class ParseOutcome:
    """Result of a single parser invocation."""

    ok: bool
    error: str | None = None
    diagram_type: str | None = None
    line: int | None = None  # 1-based
    column: int | None = None  # 1-based

    @classmethod
    def success(cls, diagram_type: str | None = None) -> ParseOutcome:
        return cls(ok=True, diagram_type=diagram_type)

    @classmethod
    def failure(cls, error: str, line: int | None = None, column: int | None = None) -> ParseOutcome:
        if line is None:
            line = line_from_message(error)
        return cls(ok=False, error=error, line=line, column=column)


def line_from_message(message: str) -> int | None:
    """Extract the first ``line N`` mention from a parser message."""
    match = _LINE_MENTION.search(message)
    return int(match.group(1)) if match else None


class DiagramParser(ABC):
    """Base class for Mermaid parsers."""

    @abstractmethod
    async def parse(self, code: str) -> ParseOutcome:
        """
        Parse sanitized diagram source.

        Returns a failed ``ParseOutcome`` for syntax errors. Raises
        ``ParserUnavailableError`` only when the parser cannot run at all.
        """
        pass


class MermaidCLIParser(DiagramParser):
    """
    Validates diagrams by rendering them with mermaid-cli.

    A diagram is valid when ``mmdc`` exits 0 and writes the output file.
    Anything on stderr (or stdout, if stderr is empty) becomes the error.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        timeout: float = 20.0,
        output_format: str = "svg",
    ) -> None:
        self.command = list(command or ["mmdc"])
        self.timeout = timeout
        self.output_format = output_format

    def is_available(self) -> bool:
        """Check whether the parser executable is on PATH."""
        return shutil.which(self.command[0]) is not None

    async def parse(self, code: str) -> ParseOutcome:
        with tempfile.TemporaryDirectory(prefix="mermaid-fix-") as tmp:
            source = Path(tmp) / "diagram.mmd"
            target = Path(tmp) / f"diagram.{self.output_format}"
            source.write_text(code, encoding="utf-8")

            argv = [*self.command, "-i", str(source), "-o", str(target), "-q"]
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=os.environ.copy(),
                )
            except FileNotFoundError as e:
                raise ParserUnavailableError(
                    f"Mermaid parser not found: {self.command[0]!r}. "
                    "Install @mermaid-js/mermaid-cli or set parser_command."
                ) from e

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return ParseOutcome.failure(f"Mermaid parser timed out after {self.timeout}s")
            except asyncio.CancelledError:
                # The caller's deadline passed; do not leave mmdc running
                process.kill()
                raise

            if process.returncode == 0 and target.exists():
                return ParseOutcome.success()

            message = _clean_output(stderr) or _clean_output(stdout)
            logger.debug("mmdc exited with %s: %s", process.returncode, message)
            return ParseOutcome.failure(
                message or f"Mermaid parser failed with exit code {process.returncode}"
            )


ParseFunction = Callable[[str], "ParseOutcome | Awaitable[ParseOutcome]"]


class CallableParser(DiagramParser):
    """
    Adapts a plain function into a parser.

    The function receives the code and returns a ``ParseOutcome`` (sync or
    async). Any exception it raises is treated as a parse error carrying
    the exception message.

    Example:
        def parse(code):
            if "-->" in code:
                return ParseOutcome.success("flowchart")
            return ParseOutcome.failure("Parse error on line 2")

        validator = DiagramValidator(parser=CallableParser(parse))
    """

    def __init__(self, fn: ParseFunction) -> None:
        self.fn = fn

    async def parse(self, code: str) -> ParseOutcome:
        try:
            result = self.fn(code)
            if inspect.isawaitable(result):
                result = await result
        except ParserUnavailableError:
            raise
        except Exception as e:
            return ParseOutcome.failure(str(e) or e.__class__.__name__)
        return result


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _clean_output(data: bytes) -> str:
    """Drop Node stack frames and blank lines from mmdc output."""
    lines = [
        line.rstrip()
        for line in _decode(data).splitlines()
        if line.strip() and not _STACK_FRAME.match(line)
    ]
    return "\n".join(lines).strip()
