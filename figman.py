#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10"
# dependencies = ["beautifulsoup4>=4.12"]
# ///
"""figman - Fig completion specs from man pages.

Reads the troff source of a command's man page, renders it to HTML, and
turns the first definition list (the usual home of OPTIONS) into a Fig
completion spec written as `<command>.ts`.

Only flags are extracted. Usage templates and prose are ignored, so a
hand-written spec should always win over a generated one.

Pipeline:
- `man -w` locates the page source.
- `.gz` pages are decompressed with `gzip -dc` into the temp directory.
- `mandoc` (or `pandoc`) renders HTML, which is pretty-printed one block per line.
- `<dl>`..`</dl>` is read as alternating flag / description lines.

Usage:
    figman ls                       # Write ./ls.ts
    figman tar -o specs/ --print    # Write specs/tar.ts and echo it
    figman grep -vv                 # Show skipped lines while extracting
"""

from __future__ import annotations

import argparse
import json
import os
import re
import shutil
import subprocess
import sys
import tempfile
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Protocol, TypedDict

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning, NavigableString, Tag
from bs4.dammit import EntitySubstitution
from bs4.element import PreformattedString

# Constants
DEFINITION_LIST_OPEN: Final[str] = "<dl>"
DEFINITION_LIST_CLOSE: Final[str] = "</dl>"
FLAG_TOKEN_RE: Final[re.Pattern[str]] = re.compile(r"-{1,2}[a-zA-Z\-]*")
# Leading width of a rendered <dd> line: one level of INDENT.
DESCRIPTION_MARKER_WIDTH: Final[int] = 2
INDENT: Final[str] = "  "

OUTPUT_SUFFIX: Final[str] = ".ts"
DEFAULT_SECTION: Final[str] = "1"
SPEC_MODULE_HEADER: Final[str] = "export const completionSpec: Fig.Spec = "

MANDOC_ARGS: Final[tuple[str, ...]] = ("-T", "html", "-O", "fragment")
PANDOC_ARGS: Final[tuple[str, ...]] = ("-f", "man", "-t", "html")
RENDERER_CHOICES: Final[tuple[str, ...]] = ("auto", "mandoc", "pandoc")

# Unwrapped entirely; they never add indentation.
CONTAINER_TAGS: Final[frozenset[str]] = frozenset(
    {"html", "body", "div", "section", "article", "main", "header", "footer", "nav"}
)
DROPPED_TAGS: Final[frozenset[str]] = frozenset({"head", "script", "style"})
# Always a single line, whatever they contain.
LEAF_TAGS: Final[frozenset[str]] = frozenset(
    {"dt", "dd", "p", "li", "pre", "td", "th", "caption",
     "h1", "h2", "h3", "h4", "h5", "h6"}
)
BLOCK_TAGS: Final[frozenset[str]] = (
    CONTAINER_TAGS
    | LEAF_TAGS
    | frozenset(
        {"dl", "ul", "ol", "table", "thead", "tbody", "tfoot", "tr",
         "blockquote", "hr", "address", "figure", "details", "summary"}
    )
)
VOID_TAGS: Final[frozenset[str]] = frozenset({"br", "hr", "img", "wbr"})

GAP_NO_TOKEN: Final[str] = "no-token"
GAP_UNPAIRED: Final[str] = "unpaired"
GAP_NO_DESCRIPTION: Final[str] = "no-description"


class OptionData(TypedDict):
    name: list[str]
    description: str


class CompletionSpecData(TypedDict):
    name: str
    description: str
    options: list[OptionData]


class FigmanError(RuntimeError):
    pass


class UsageError(FigmanError):
    pass


class NotFoundError(FigmanError):
    pass


class DecompressionError(FigmanError):
    pass


class ManualReadError(FigmanError):
    pass


class RenderError(FigmanError):
    pass


@dataclass(frozen=True, slots=True)
class ManualSource:
    """Where the troff source of a command's man page lives."""

    command_name: str
    file_path: Path


@dataclass(frozen=True, slots=True)
class RenderedDocument:
    """Pretty-printed markup, one block element per line."""

    content: tuple[str, ...]

    @property
    def text(self) -> str:
        return "\n".join(self.content)


@dataclass(frozen=True, slots=True)
class FlagEntry:
    token: tuple[str, ...]  # e.g. ("-h", "--help")
    description: str

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("FlagEntry token must not be empty")


@dataclass(frozen=True, slots=True)
class ExtractionGap:
    """A line of the definition block that produced no entry."""

    index: int
    line: str
    reason: str


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    entries: tuple[FlagEntry, ...]
    gaps: tuple[ExtractionGap, ...]


@dataclass(frozen=True, slots=True)
class CompletionSpec:
    name: str
    options: tuple[FlagEntry, ...]
    description: str = ""

    def to_dict(self) -> CompletionSpecData:
        return {
            "name": self.name,
            "description": self.description,
            "options": [
                {"name": list(entry.token), "description": entry.description}
                for entry in self.options
            ],
        }


@dataclass(frozen=True, slots=True)
class Settings:
    output_dir: Path
    tmp_dir: Path
    renderer: str = "auto"
    verbosity: int = 0
    echo: bool = False


def _log(*, verbosity: int, message: str, level: int = 1) -> None:
    if verbosity >= level:
        print(f"[figman] {message}", file=sys.stderr)


def _command_file_name(command: str) -> str:
    """Use the command token as the name, sanitized for filesystem."""
    safe = command.replace("/", "_").replace("\\", "_")
    safe = safe.replace(":", "_")
    safe = re.sub(r"\s+", "_", safe)
    return safe


def _require_command(raw: str | None) -> str:
    if raw is None or not raw.strip():
        raise UsageError("Usage: figman COMMAND")
    return raw.strip()


# Locator


def locate_manual(*, command: str) -> ManualSource:
    """Ask `man -w` where the page source for `command` lives."""
    try:
        result = subprocess.run(
            ["man", "-w", command],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise NotFoundError(f"No MAN page found for `{command}` (man is not installed)") from e

    stdout = result.stdout or ""
    stderr = (result.stderr or "").strip()
    if result.returncode != 0 or stderr:
        raise NotFoundError(f"No MAN page found for `{command}`")

    # man -w can list several pages; the first one is what `man` would show.
    first = stdout.split("\n")[0].strip()
    if not first:
        raise NotFoundError(f"No MAN page found for `{command}`")
    return ManualSource(command_name=command, file_path=Path(first))


# Decompressor


def is_compressed(path: Path) -> bool:
    return path.name.endswith(".gz")


def _manual_section(path: Path) -> str:
    # ls.1.gz -> 1, git-commit.1p.gz -> 1p
    name = path.name[: -len(".gz")] if is_compressed(path) else path.name
    if "." not in name:
        return DEFAULT_SECTION
    section = name.rsplit(".", 1)[1]
    return section or DEFAULT_SECTION


def decompress_manual(*, source: ManualSource, tmp_dir: Path) -> Path:
    """Return a readable, uncompressed copy of the page source.

    Gzip pages are expanded to `<tmp_dir>/<command>.<section>`. The gzip
    process has exited and the file is closed before the path is returned.
    Anything else is handed back untouched.
    """
    if not is_compressed(source.file_path):
        return source.file_path

    target = tmp_dir / (
        f"{_command_file_name(source.command_name)}.{_manual_section(source.file_path)}"
    )
    try:
        tmp_dir.mkdir(parents=True, exist_ok=True)
        handle = target.open("wb")
    except OSError as e:
        raise DecompressionError(f"Cannot write {target}: {e}") from e

    with handle:
        try:
            result = subprocess.run(
                ["gzip", "-dc", str(source.file_path)],
                stdout=handle,
                stderr=subprocess.PIPE,
                check=False,
            )
        except FileNotFoundError as e:
            raise DecompressionError("gzip is not installed") from e

    if result.returncode != 0:
        target.unlink(missing_ok=True)
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        raise DecompressionError(
            f"Failed to decompress {source.file_path} (exit {result.returncode}): "
            f"{stderr or 'no stderr'}"
        )
    return target


# Renderer


def read_manual(*, path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ManualReadError(f"Cannot read man page {path}: {e}") from e


class MarkupRenderer(Protocol):
    def render(self, *, source: str) -> str: ...


def _run_renderer(*, cmd: list[str], source: str) -> str:
    """Feed troff source on stdin, return the HTML the tool prints."""
    try:
        result = subprocess.run(
            cmd,
            input=source,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise RenderError(f"Renderer not found: {cmd[0]}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise RenderError(
            f"{cmd[0]} failed (exit {result.returncode}): {stderr or 'no stderr'}"
        )
    return result.stdout or ""


@dataclass(frozen=True, slots=True)
class MandocRenderer:
    executable: str = "mandoc"

    def render(self, *, source: str) -> str:
        return _run_renderer(cmd=[self.executable, *MANDOC_ARGS], source=source)


@dataclass(frozen=True, slots=True)
class PandocRenderer:
    executable: str = "pandoc"

    def render(self, *, source: str) -> str:
        return _run_renderer(cmd=[self.executable, *PANDOC_ARGS], source=source)


def select_renderer(*, name: str) -> MandocRenderer | PandocRenderer:
    if name == "mandoc":
        return MandocRenderer()
    if name == "pandoc":
        return PandocRenderer()
    if name != "auto":
        raise RenderError(f"Unsupported renderer: {name}")
    for candidate in (MandocRenderer(), PandocRenderer()):
        if shutil.which(candidate.executable) is not None:
            return candidate
    raise RenderError("Neither mandoc nor pandoc is installed")


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _is_block(tag: Tag) -> bool:
    return tag.name in BLOCK_TAGS


def _inline_contents(tag: Tag) -> str:
    return "".join(_inline_markup(child) for child in tag.children)


def _inline_markup(node: object) -> str:
    if isinstance(node, Tag):
        if node.name in DROPPED_TAGS:
            return ""
        if node.name in VOID_TAGS:
            return " " if _is_block(node) else f"<{node.name}>"
        if _is_block(node):
            # Keeps block tags of nested lists out of the line.
            return f" {_inline_contents(node)} "
        return f"<{node.name}>{_inline_contents(node)}</{node.name}>"
    if isinstance(node, PreformattedString):
        return ""
    if isinstance(node, NavigableString):
        return EntitySubstitution.substitute_xml(str(node))
    return ""


def _flush_inline(run: list[str], depth: int, lines: list[str]) -> None:
    text = _collapse("".join(run))
    run.clear()
    if text:
        lines.append(INDENT * depth + text)


def _format_children(parent: Tag, depth: int, lines: list[str]) -> None:
    run: list[str] = []
    for child in parent.children:
        if isinstance(child, Tag) and child.name in DROPPED_TAGS:
            continue
        if isinstance(child, Tag) and _is_block(child):
            _flush_inline(run, depth, lines)
            _format_block(child, depth, lines)
        else:
            run.append(_inline_markup(child))
    _flush_inline(run, depth, lines)


def _format_block(tag: Tag, depth: int, lines: list[str]) -> None:
    if tag.name in CONTAINER_TAGS:
        _format_children(tag, depth, lines)
        return
    if tag.name in VOID_TAGS:
        lines.append(INDENT * depth + f"<{tag.name}>")
        return
    has_block_child = any(
        isinstance(child, Tag) and _is_block(child) and child.name not in DROPPED_TAGS
        for child in tag.children
    )
    if tag.name in LEAF_TAGS or not has_block_child:
        inner = _collapse(_inline_contents(tag))
        lines.append(INDENT * depth + f"<{tag.name}>{inner}</{tag.name}>")
        return
    lines.append(INDENT * depth + f"<{tag.name}>")
    _format_children(tag, depth + 1, lines)
    lines.append(INDENT * depth + f"</{tag.name}>")


def pretty_print(*, html: str) -> RenderedDocument:
    """Lay HTML out one block per line so line positions can be trusted.

    Attributes, comments and `<head>` are dropped, document containers such
    as `<body>` and `<section>` are unwrapped, and every other nested block
    is indented by INDENT per level. `dt`/`dd` and the other LEAF_TAGS always
    take exactly one line, which keeps a definition list strictly
    alternating between term and description.
    """
    soup = BeautifulSoup(html, "html.parser")
    lines: list[str] = []
    _format_children(soup, 0, lines)
    return RenderedDocument(content=tuple(lines))


def render_manual(*, path: Path, renderer: MarkupRenderer) -> RenderedDocument:
    source = read_manual(path=path)
    return pretty_print(html=renderer.render(source=source))


# Flag extraction


def _definition_block(text: str) -> str:
    start = text.find(DEFINITION_LIST_OPEN)
    if start == -1:
        return ""
    end = text.find(DEFINITION_LIST_CLOSE, start + len(DEFINITION_LIST_OPEN))
    if end == -1:
        end = len(text)
    return text[start:end]


def _plain_text(line: str) -> str:
    # Single rendered lines often look like file names to bs4.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        return BeautifulSoup(line, "html.parser").get_text()


def extract_flags(*, document: RenderedDocument) -> ExtractionResult:
    """Read flag/description pairs out of the first definition list.

    Line 0 of the block is the `<dl>` line itself; after it the block is
    expected to alternate flag line, description line. A flag line is only
    accepted at odd indexes, and its description is the following line with
    its leading DESCRIPTION_MARKER_WIDTH characters dropped and markup
    removed. Everything else is recorded as a gap and skipped.
    """
    lines = _definition_block(document.text).split("\n")
    entries: list[FlagEntry] = []
    gaps: list[ExtractionGap] = []

    for idx, line in enumerate(lines):
        tokens = FLAG_TOKEN_RE.findall(line)
        if not tokens:
            gaps.append(ExtractionGap(index=idx, line=line, reason=GAP_NO_TOKEN))
            continue
        if idx % 2 == 0:
            gaps.append(ExtractionGap(index=idx, line=line, reason=GAP_UNPAIRED))
            continue
        if idx + 1 >= len(lines):
            gaps.append(ExtractionGap(index=idx, line=line, reason=GAP_NO_DESCRIPTION))
            continue

        # html.parser squeezes leading whitespace, so drop the marker before parsing.
        marked = lines[idx + 1][DESCRIPTION_MARKER_WIDTH:]
        description = _plain_text(marked).rstrip()
        entries.append(FlagEntry(token=tuple(tokens), description=description))

    return ExtractionResult(entries=tuple(entries), gaps=tuple(gaps))


# Spec assembly and output


def assemble_completion_spec(
    *, command: str, entries: tuple[FlagEntry, ...]
) -> CompletionSpec:
    return CompletionSpec(name=command, options=tuple(entries))


def render_spec_module(*, spec: CompletionSpec) -> str:
    body = json.dumps(spec.to_dict(), indent=2, ensure_ascii=False)
    return f"{SPEC_MODULE_HEADER}\n{body}\n"


def completion_spec_path(*, command: str, output_dir: Path) -> Path:
    return output_dir / f"{_command_file_name(command)}{OUTPUT_SUFFIX}"


def write_completion_spec(*, spec: CompletionSpec, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = completion_spec_path(command=spec.name, output_dir=output_dir)
    # Atomic write: write to temp file then rename
    temp_path = path.with_suffix(f".tmp.{os.getpid()}")
    try:
        temp_path.write_text(render_spec_module(spec=spec), encoding="utf-8")
        temp_path.replace(path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    return path


def generate_completion_spec(
    *, command: str, settings: Settings, renderer: MarkupRenderer | None = None
) -> CompletionSpec:
    """Run every stage up to (not including) the write."""
    verbosity = settings.verbosity
    source = locate_manual(command=command)
    _log(verbosity=verbosity, message=f"man page: {source.file_path}")

    path = decompress_manual(source=source, tmp_dir=settings.tmp_dir)
    if path != source.file_path:
        _log(verbosity=verbosity, message=f"decompressed to: {path}")

    if renderer is None:
        selected = select_renderer(name=settings.renderer)
        _log(verbosity=verbosity, message=f"renderer: {selected.executable}")
        renderer = selected
    document = render_manual(path=path, renderer=renderer)

    result = extract_flags(document=document)
    _log(
        verbosity=verbosity,
        message=f"extracted {len(result.entries)} flags ({len(result.gaps)} lines skipped)",
    )
    for gap in result.gaps:
        _log(
            verbosity=verbosity,
            message=f"skipped line {gap.index} ({gap.reason}): {gap.line.strip()}",
            level=2,
        )
    if not result.entries:
        _log(
            verbosity=verbosity,
            message="no flags found; the page may not use a definition list",
        )

    return assemble_completion_spec(command=command, entries=result.entries)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="figman",
        description="Generate a Fig completion spec from a command's man page",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("command", nargs="?", help="Command whose man page is converted")
    parser.add_argument(
        "-o",
        "--output-dir",
        default=".",
        help="Directory for <command>.ts (default: current directory)",
    )
    parser.add_argument(
        "--tmp-dir",
        default=tempfile.gettempdir(),
        help="Where compressed man pages are expanded (default: system temp dir)",
    )
    parser.add_argument("--renderer", default="auto", choices=list(RENDERER_CHOICES))
    parser.add_argument(
        "--print",
        dest="echo",
        action="store_true",
        help="Print the generated spec to stdout (also writes the file)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    args = parser.parse_args(argv)

    try:
        command = _require_command(args.command)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print(str(e), file=sys.stderr)
        return 1

    settings = Settings(
        output_dir=Path(args.output_dir).expanduser(),
        tmp_dir=Path(args.tmp_dir).expanduser(),
        renderer=args.renderer,
        verbosity=args.verbose,
        echo=args.echo,
    )

    try:
        spec = generate_completion_spec(command=command, settings=settings)
    except FigmanError as e:
        print(str(e), file=sys.stderr)
        return 1

    try:
        path = write_completion_spec(spec=spec, output_dir=settings.output_dir)
    except OSError as e:
        print(f"Cannot write completion spec: {e}", file=sys.stderr)
        return 1
    if settings.echo:
        print(render_spec_module(spec=spec), end="")
    print(
        f"Now you just have to move the file {path} to the `dev` folder "
        "on Fig's autocomplete source directory"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
