#!/usr/bin/env python3
"""
dcat - Concatenate files and print on the standard output

Drop-in replacement for cat(1) tuned for large inputs:
- Raw passthrough with a reusable read buffer when no formatting is requested
- Line numbering, end markers, tab and non-printing visualisation, blank squeezing
- Canonical hex dump mode
- Progress reporting on stderr for multi-megabyte streams
"""

import argparse
import logging
import os
import re
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, NamedTuple, Optional, Sequence, TextIO, Union

from tqdm import tqdm


__version__ = "1.0.0"
__author__ = "Juan Manuel Rodriguez"
__license__ = "GPLv3+"

PROGRAM_NAME = "dcat"

DEFAULT_BUFFER_SIZE = 256 * 1024
MIN_BUFFER_SIZE = 1024
PROGRESS_STEP = 10 * 1024 * 1024
MEGABYTE = 1024 * 1024

LINE_FEED = 0x0A
TAB = 0x09
HEX_ROW_WIDTH = 16


class DcatError(Exception):
    """Base exception for dcat errors"""

    pass


class ConfigurationError(DcatError):
    """Invalid option values, raised before any input is read"""

    pass


class SourceError(DcatError):
    """Failure tied to a single input source"""

    def __init__(self, name: str, error: Union[OSError, str]):
        self.name = name
        self.error = error
        if isinstance(error, OSError) and error.strerror:
            reason = error.strerror
        else:
            reason = str(error)
        super().__init__(f"{name}: {reason}")


class SourceOpenError(SourceError):
    """Source could not be opened (missing, permission denied, directory...)"""

    pass


class SourceReadError(SourceError):
    """I/O failure while reading an already opened source"""

    pass


class SinkWriteError(DcatError):
    """Output failure; fatal for the whole run"""

    def __init__(self, error: OSError):
        self.error = error
        super().__init__(f"write error: {error.strerror or error}")


@dataclass(frozen=True)
class DcatConfig:
    """Resolved output options. Built once, read-only afterwards."""

    show_ends: bool = False
    show_tabs: bool = False
    show_nonprinting: bool = False
    number_lines: bool = False
    number_nonblank: bool = False
    squeeze_blank: bool = False
    hex_mode: bool = False
    chunk_size: int = DEFAULT_BUFFER_SIZE
    show_progress: bool = False
    verbose: bool = False

    def __post_init__(self):
        if self.chunk_size < MIN_BUFFER_SIZE:
            raise ConfigurationError(
                f"buffer size must be at least {MIN_BUFFER_SIZE} bytes"
            )

    @property
    def formatting_active(self) -> bool:
        return any(
            (
                self.show_ends,
                self.show_tabs,
                self.show_nonprinting,
                self.number_lines,
                self.number_nonblank,
                self.squeeze_blank,
            )
        )


def build_config(
    show_all: bool = False,
    number_nonblank: bool = False,
    show_ends: bool = False,
    nonprinting_ends: bool = False,
    number_lines: bool = False,
    squeeze_blank: bool = False,
    show_tabs: bool = False,
    nonprinting_tabs: bool = False,
    show_nonprinting: bool = False,
    hex_mode: bool = False,
    chunk_size: int = DEFAULT_BUFFER_SIZE,
    show_progress: bool = False,
    verbose: bool = False,
) -> DcatConfig:
    """Resolve the flag algebra (-A = -vET, -e = -vE, -t = -vT, -b beats -n)"""
    if show_all:
        show_nonprinting = show_ends = show_tabs = True
    if nonprinting_ends:
        show_nonprinting = show_ends = True
    if nonprinting_tabs:
        show_nonprinting = show_tabs = True
    if number_nonblank:
        number_lines = False

    return DcatConfig(
        show_ends=show_ends,
        show_tabs=show_tabs,
        show_nonprinting=show_nonprinting,
        number_lines=number_lines,
        number_nonblank=number_nonblank,
        squeeze_blank=squeeze_blank,
        hex_mode=hex_mode,
        chunk_size=chunk_size,
        show_progress=show_progress,
        verbose=verbose,
    )


def parse_size(size: Union[str, int]) -> int:
    """Parse human-readable size to bytes with validation"""
    if isinstance(size, int):
        if size < 0:
            raise ValueError(f"Size cannot be negative: {size}")
        return size
    if not isinstance(size, str):
        raise ValueError(f"Size must be a string, got {type(size)}")

    size_str = size.upper().strip()
    if size_str.endswith("B"):
        size_str = size_str[:-1]

    match = re.match(r"^(\d*\.?\d+)([KMG]?)$", size_str)
    if not match:
        raise ValueError(f"Invalid size format: {size}")

    number, unit = match.groups()
    multipliers = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}
    return int(float(number) * multipliers[unit])


def format_size(size: int) -> str:
    """Format size in human-readable format"""
    if size < 0:
        return "0B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


class LineSegment(NamedTuple):
    """Half-open byte range [start, end) of one line inside a chunk buffer.

    ``terminated`` is true when a line feed follows ``end`` in the buffer,
    false when the range stops at the end of the chunk.
    """

    start: int
    end: int
    terminated: bool

    @property
    def length(self) -> int:
        return self.end - self.start


def scan_lines(buffer: Union[bytes, bytearray], length: Optional[int] = None) -> Iterator[LineSegment]:
    """Split ``buffer[:length]`` into line segments.

    The line feed itself is not part of any segment. A chunk ending right
    after a line feed yields no trailing empty segment.
    """
    end = len(buffer) if length is None else length
    find = buffer.find
    cursor = 0
    while cursor < end:
        newline = find(b"\n", cursor, end)
        if newline < 0:
            yield LineSegment(cursor, end, False)
            return
        yield LineSegment(cursor, newline, True)
        cursor = newline + 1


@dataclass
class ScanState:
    """Per-source line state that survives chunk refills"""

    last_char_was_newline: bool = True
    consecutive_blank_line_count: int = 0

    def reset(self) -> None:
        self.last_char_was_newline = True
        self.consecutive_blank_line_count = 0


@dataclass
class LineCounter:
    """Line number shared by every source of one invocation"""

    value: int = 0

    def next(self) -> int:
        self.value += 1
        return self.value


def escape_nonprinting(value: int) -> bytes:
    """Render one byte in ^X / M-X notation.

    Tab and line feed are handled by the caller; here they follow the
    plain control rule like any other byte below 32.
    """
    if value >= 128:
        return b"M-" + escape_nonprinting(value - 128)
    if value < 32:
        return bytes((ord("^"), value + 64))
    if value == 127:
        return b"^?"
    return bytes((value,))


def build_escape_table(show_tabs: bool, show_nonprinting: bool) -> List[bytes]:
    """Per-byte output table for the body of a line"""
    table = [bytes((value,)) for value in range(256)]
    if show_nonprinting:
        for value in range(256):
            if (value < 32 or value > 126) and value not in (TAB, LINE_FEED):
                table[value] = escape_nonprinting(value)
    if show_tabs:
        table[TAB] = b"^I"
    return table


class LineTransformer:
    """Formats line segments according to a DcatConfig"""

    def __init__(self, config: DcatConfig, counter: LineCounter):
        self.config = config
        self.counter = counter

        self._table = build_escape_table(config.show_tabs, config.show_nonprinting)
        # Bytes that render as themselves; deleting them leaves only bytes to escape
        self._verbatim = bytes(
            value for value in range(256) if self._table[value] == bytes((value,))
        )
        self._escaping = len(self._verbatim) < 256
        self._line_end = b"$\n" if config.show_ends else b"\n"

    def _number_prefix(self) -> bytes:
        return f"{self.counter.next():6d}\t".encode("ascii")

    def render_body(self, body: Union[bytes, bytearray]) -> Union[bytes, bytearray]:
        if not self._escaping or not body.translate(None, self._verbatim):
            return body
        return b"".join(map(self._table.__getitem__, body))

    def transform(
        self,
        buffer: Union[bytes, bytearray],
        segment: LineSegment,
        state: ScanState,
        out: List[bytes],
    ) -> None:
        """Append the formatted bytes of ``segment`` to ``out`` and update ``state``"""
        length = segment.length
        if not length and not segment.terminated:
            return

        if state.last_char_was_newline:
            blank = length == 0
            if blank:
                state.consecutive_blank_line_count += 1
            else:
                state.consecutive_blank_line_count = 0

            if (
                blank
                and self.config.squeeze_blank
                and state.consecutive_blank_line_count > 1
            ):
                return

            if self.config.number_nonblank:
                if not blank:
                    out.append(self._number_prefix())
            elif self.config.number_lines:
                out.append(self._number_prefix())

        if length:
            out.append(self.render_body(buffer[segment.start : segment.end]))

        if segment.terminated:
            out.append(self._line_end)
            state.last_char_was_newline = True
        else:
            state.last_char_was_newline = False


def format_hex_row(offset: int, row: Union[bytes, memoryview]) -> str:
    """One hex dump line: offset, 16 hex cells, ASCII gutter"""
    cells = []
    for index in range(HEX_ROW_WIDTH):
        cells.append(f"{row[index]:02x} " if index < len(row) else "   ")
        if index == 7:
            cells.append(" ")
    gutter = "".join(chr(byte) if 32 <= byte < 127 else "." for byte in row)
    return f"{offset:08x}: {''.join(cells)} {gutter.ljust(HEX_ROW_WIDTH)}\n"


class HexRenderer:
    """Hex dump of one source, with rows independent of read sizes"""

    def __init__(self):
        self.offset = 0
        self._pending = b""

    def feed(self, data: Union[bytes, memoryview]) -> bytes:
        if self._pending:
            data = self._pending + bytes(data)
        full = len(data) - len(data) % HEX_ROW_WIDTH
        rows = [
            format_hex_row(self.offset + start, data[start : start + HEX_ROW_WIDTH])
            for start in range(0, full, HEX_ROW_WIDTH)
        ]
        # The read buffer is reused, keep our own copy of the tail
        self._pending = bytes(data[full:])
        self.offset += full
        return "".join(rows).encode("ascii")

    def flush(self) -> bytes:
        if not self._pending:
            return b""
        row = format_hex_row(self.offset, self._pending)
        self.offset += len(self._pending)
        self._pending = b""
        return row.encode("ascii")


class ProgressReporter:
    """Cumulative megabyte counter on stderr, refreshed every PROGRESS_STEP bytes"""

    BAR_FORMAT = "{desc}: {n} MB processed"
    DONE_FORMAT = "{desc}: {n} MB processed - done"

    def __init__(self, stream: Optional[TextIO] = None, enabled: bool = True, step: int = PROGRESS_STEP):
        self.stream = stream if stream is not None else sys.stderr
        self.enabled = enabled
        self.step = step
        self._next_report = step
        self._bar = None

    @property
    def active(self) -> bool:
        return self._bar is not None

    def update(self, name: str, total: int) -> None:
        if not self.enabled or total < self._next_report:
            return
        self._next_report = (total // self.step + 1) * self.step
        megabytes = total // MEGABYTE

        if self._bar is None:
            self._bar = tqdm(
                desc=name,
                initial=megabytes,
                unit="MB",
                file=self.stream,
                bar_format=self.BAR_FORMAT,
                mininterval=0,
                miniters=1,
                leave=True,
            )
        else:
            self._bar.set_description_str(name, refresh=False)
            self._bar.update(megabytes - self._bar.n)

    def finish(self) -> None:
        if self._bar is None:
            return
        self._bar.bar_format = self.DONE_FORMAT
        self._bar.close()
        self._bar = None


class Concatenator:
    """Reads sources in order and writes them, formatted, to one sink"""

    def __init__(
        self,
        config: Optional[DcatConfig] = None,
        sink: Optional[BinaryIO] = None,
        stdin: Optional[BinaryIO] = None,
        progress_stream: Optional[TextIO] = None,
    ):
        self.config = config or DcatConfig()
        self.sink = sink if sink is not None else sys.stdout.buffer
        self.stdin = stdin
        self.logger = logging.getLogger(PROGRAM_NAME)

        self.counter = LineCounter()
        self.total_bytes = 0
        self.progress = ProgressReporter(progress_stream, enabled=self.config.show_progress)
        self.state = ScanState()
        self._transformer = LineTransformer(self.config, self.counter)
        self._buffer: Optional[bytearray] = None

        self.stats = {
            "sources_processed": 0,
            "sources_failed": 0,
            "bytes_read": 0,
            "bytes_written": 0,
        }

    @property
    def mode(self) -> str:
        if self.config.hex_mode:
            return "hex"
        if self.config.formatting_active:
            return "transform"
        return "passthrough"

    def _acquire_buffer(self, name: str) -> bytearray:
        if self._buffer is None:
            try:
                self._buffer = bytearray(self.config.chunk_size)
            except MemoryError:
                raise SourceReadError(name, "memory allocation failed")
        return self._buffer

    def _write(self, data) -> None:
        if not data:
            return
        try:
            self.sink.write(data)
        except OSError as e:
            raise SinkWriteError(e) from e
        self.stats["bytes_written"] += len(data)

    def _read_chunks(self, source: BinaryIO, name: str, view: memoryview) -> Iterator[int]:
        """Fill ``view`` from ``source`` until EOF, yielding the byte count of each read"""
        while True:
            try:
                count = source.readinto(view)
            except MemoryError:
                raise SourceReadError(name, "memory allocation failed")
            except OSError as e:
                raise SourceReadError(name, e) from e
            if not count:
                return
            yield count

    def process_stream(self, source: BinaryIO, name: str) -> int:
        """Copy one opened source to the sink. Returns the number of bytes read."""
        buffer = self._acquire_buffer(name)
        mode = self.mode
        state = self.state
        state.reset()
        hex_renderer = HexRenderer() if mode == "hex" else None
        source_bytes = 0

        try:
            with memoryview(buffer) as view:
                for count in self._read_chunks(source, name, view):
                    if mode == "hex":
                        self._write(hex_renderer.feed(view[:count]))
                    elif mode == "passthrough":
                        self._write(view[:count])
                    else:
                        pieces: List[bytes] = []
                        for segment in scan_lines(buffer, count):
                            self._transformer.transform(buffer, segment, state, pieces)
                        self._write(b"".join(pieces))

                    source_bytes += count
                    self.total_bytes += count
                    self.stats["bytes_read"] += count
                    self.progress.update(name, self.total_bytes)
        except SourceReadError:
            # Bytes read before the failure are still dumped
            if hex_renderer is not None:
                self._write(hex_renderer.flush())
            raise

        if hex_renderer is not None:
            self._write(hex_renderer.flush())

        self.logger.debug(f"{name}: {format_size(source_bytes)} read ({mode})")
        return source_bytes

    def process_source(self, name: str) -> int:
        """Open ``name`` ('-' is standard input) and process it"""
        if name == "-":
            stdin = self.stdin if self.stdin is not None else sys.stdin.buffer
            return self.process_stream(stdin, name)

        try:
            source = open(name, "rb")
        except OSError as e:
            raise SourceOpenError(name, e) from e

        with source:
            return self.process_stream(source, name)

    def run(self, names: Optional[Sequence[str]] = None) -> int:
        """Process every source in order. Returns the exit status.

        Open and read failures are reported and skipped; a SinkWriteError
        propagates immediately.
        """
        status = 0
        try:
            for name in names or ["-"]:
                try:
                    self.process_source(name)
                    self.stats["sources_processed"] += 1
                except SourceError as e:
                    self.logger.error(str(e))
                    self.stats["sources_failed"] += 1
                    status = 1

            try:
                self.sink.flush()
            except OSError as e:
                raise SinkWriteError(e) from e
        finally:
            self.progress.finish()

        self.logger.debug(
            f"{self.stats['sources_processed']} sources, "
            f"{format_size(self.stats['bytes_read'])} read, "
            f"{format_size(self.stats['bytes_written'])} written, "
            f"{self.stats['sources_failed']} failed"
        )
        return status


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Diagnostics go to stderr as '<program>: <message>'"""
    logger = logging.getLogger(PROGRAM_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Avoid duplicate handlers
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)

    return logger


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = f"""# dcat configuration
# Command line options always take precedence over these values.

# Read buffer size (e.g. "64K", "1M"; at least {MIN_BUFFER_SIZE} bytes)
# buffer_size = "256K"

# Show progress on stderr for large inputs
# progress = false

# Always squeeze repeated blank lines
# squeeze_blank = false

# Hex dump instead of text output
# hex_dump = false

# Debug diagnostics
# verbose = false
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except OSError as e:
        logging.getLogger(PROGRAM_NAME).error(f"{config_path}: {e.strerror or e}")
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load configuration from file, warning on malformed lines"""
    logger = logging.getLogger(PROGRAM_NAME)
    if not config_path.exists():
        return {}

    config = {}
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" not in line:
                    logger.warning(f"{config_path}:{line_num}: expected 'key = value'")
                    continue

                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip("\"'")

                if value.lower() in ("true", "false"):
                    config[key] = value.lower() == "true"
                elif value.isdigit():
                    config[key] = int(value)
                else:
                    config[key] = value
    except OSError as e:
        logger.warning(f"{config_path}: {e.strerror or e}")

    return config


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1, as cat does"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(
            1,
            f"{self.prog}: {message}\nTry '{self.prog} --help' for more information.\n",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=PROGRAM_NAME,
        description="Concatenate FILE(s) to standard output.\n\n"
        "With no FILE, or when FILE is -, read standard input.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s f - g  Output f's contents, then standard input, then g's contents.
  %(prog)s        Copy standard input to standard output.

Settings from the configuration file (default ~/.config/dcat/config) apply
unless overridden on the command line; use --config to point elsewhere.
        """,
    )

    parser.add_argument("files", nargs="*", metavar="FILE", help="Input files")

    parser.add_argument(
        "-A", "--show-all", action="store_true", help="equivalent to -vET"
    )
    parser.add_argument(
        "-b",
        "--number-nonblank",
        action="store_true",
        help="number nonempty output lines, overrides -n",
    )
    parser.add_argument(
        "-e", dest="nonprinting_ends", action="store_true", help="equivalent to -vE"
    )
    parser.add_argument(
        "-E", "--show-ends", action="store_true", help="display $ at end of each line"
    )
    parser.add_argument(
        "-n", "--number", action="store_true", help="number all output lines"
    )
    parser.add_argument(
        "-s",
        "--squeeze-blank",
        action="store_true",
        help="suppress repeated empty output lines",
    )
    parser.add_argument(
        "-t", dest="nonprinting_tabs", action="store_true", help="equivalent to -vT"
    )
    parser.add_argument(
        "-T", "--show-tabs", action="store_true", help="display TAB characters as ^I"
    )
    parser.add_argument(
        "-v",
        "--show-nonprinting",
        action="store_true",
        help="use ^ and M- notation, except for LFD and TAB",
    )

    parser.add_argument(
        "--buffer-size",
        metavar="SIZE",
        default=None,
        help=f"use SIZE-byte buffer (default {DEFAULT_BUFFER_SIZE}, suffixes K/M/G)",
    )
    parser.add_argument(
        "--progress", action="store_true", help="show progress for large files"
    )
    parser.add_argument(
        "--hex-dump", action="store_true", help="show hex dump of binary data"
    )

    parser.add_argument(
        "--verbose", action="store_true", help="print debug diagnostics on stderr"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path.home() / ".config" / PROGRAM_NAME / "config",
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def _file_flag(file_config: Dict, key: str) -> bool:
    """Boolean setting from the config file; anything but true/false is ignored"""
    value = file_config.get(key, False)
    if isinstance(value, bool):
        return value
    logging.getLogger(PROGRAM_NAME).warning(
        f"config: {key} must be true or false, ignoring {value!r}"
    )
    return False


def config_from_args(args: argparse.Namespace, file_config: Optional[Dict] = None) -> DcatConfig:
    """Merge parsed options over the configuration file values"""
    file_config = file_config or {}

    raw_size = args.buffer_size
    if raw_size is None:
        raw_size = file_config.get("buffer_size", DEFAULT_BUFFER_SIZE)
    try:
        chunk_size = parse_size(raw_size)
    except ValueError:
        raise ConfigurationError(f"invalid buffer size: {raw_size}")

    return build_config(
        show_all=args.show_all,
        number_nonblank=args.number_nonblank,
        show_ends=args.show_ends,
        nonprinting_ends=args.nonprinting_ends,
        number_lines=args.number,
        squeeze_blank=args.squeeze_blank or _file_flag(file_config, "squeeze_blank"),
        show_tabs=args.show_tabs,
        nonprinting_tabs=args.nonprinting_tabs,
        show_nonprinting=args.show_nonprinting,
        hex_mode=args.hex_dump or _file_flag(file_config, "hex_dump"),
        chunk_size=chunk_size,
        show_progress=args.progress or _file_flag(file_config, "progress"),
        verbose=args.verbose or _file_flag(file_config, "verbose"),
    )


def _silence_stdout() -> None:
    """Point stdout at devnull so interpreter shutdown does not hit the broken pipe again"""
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    except (OSError, ValueError):
        pass


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point; returns the process exit status"""
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.verbose)

    try:
        if args.create_config:
            if create_config_file(args.config):
                print(f"Created default configuration file: {args.config}")
                return 0
            return 1

        config = config_from_args(args, load_config_file(args.config))
        if config.verbose:
            logger.setLevel(logging.DEBUG)

        concatenator = Concatenator(config)
        return concatenator.run(args.files)

    except ConfigurationError as e:
        logger.error(str(e))
        return 1
    except SinkWriteError as e:
        logger.error(str(e))
        if isinstance(e.error, BrokenPipeError):
            _silence_stdout()
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error(f"unexpected error: {e}")
        if args.verbose:
            logger.error(traceback.format_exc())
        return 1


def cli_main():
    """Synchronous entry point for console scripts"""
    return main()


if __name__ == "__main__":
    sys.exit(cli_main())
