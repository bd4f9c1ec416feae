"""
csvstream: incremental, quote-aware CSV parsing over text fragments.

Contract (v0):
- Input is an ordered sequence of text fragments plus an end signal.
  Fragment boundaries carry no meaning: a field, a quoted newline or the two
  halves of "\\r\\n" may straddle them. The input is never materialized.
- Quoting: '"' opens/closes a quoted region; '""' inside quotes is a literal '"'.
  Delimiters and newlines inside quotes are field text.
- A logical line ends at an unquoted '\\n'; one trailing '\\r' is dropped.
- Blank (all-whitespace) lines are counted but never produce rows.
- Header modes (exactly one):
    CaptureHeaders()            first non-blank line becomes the header list
    ValidateHeaders(expected)   first non-blank line must equal `expected`
    NumericKeys()               no header; keys are "1", "2", ...
    FixedHeaders(headers)       no header line; `headers` apply to every row
  Header cells are trimmed; the first one also loses a leading BOM.
- Short rows pad with "", long rows keep extras only in RowRecord.values.
  strict_columns rejects rows whose overflow is non-blank.
- Stream errors (UNBALANCED_QUOTES, HEADER_MISMATCH, COLUMN_COUNT_EXCEEDED)
  are delivered as "error" notifications and halt the stream; feed()/close()
  never raise them. No "end" notification follows a halt.
- Field values are never interpreted: every value is a str.

API:
- parse_line(line, delimiter) -> ParsedLine (single logical line)
- LineScanner -> fragment-to-logical-line splitter
- CSVStream(...) -> push-driven parser: on(), feed(), close(), run()
- stream_rows(source, ...) / astream_rows(fragments, ...) -> row iterators
- collect(), validate(), validate_schema(), create_validator() -> consumers
- required(), number(), pattern(), date(), boolean(), one_of() -> field validators
- to_csv(rows, ...) / iter_csv(rows, ...) -> serialization

Python: 3.10+
"""

from __future__ import annotations

import codecs
import csv
import io
import math
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Pattern,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

import structlog

logger = structlog.get_logger(__name__)

__version__ = "0.1.0"


# ----------------------------
# Exceptions
# ----------------------------

ErrorKind = str  # one of the kind constants below

UNBALANCED_QUOTES: ErrorKind = "UNBALANCED_QUOTES"
HEADER_MISMATCH: ErrorKind = "HEADER_MISMATCH"
COLUMN_COUNT_EXCEEDED: ErrorKind = "COLUMN_COUNT_EXCEEDED"
STREAM_ERROR: ErrorKind = "STREAM_ERROR"
NO_DATA_ROWS: ErrorKind = "NO_DATA_ROWS"


class CSVStreamError(ValueError):
    """Raised by consumers (collect) when the stream reported a parse error."""

    def __init__(
        self,
        *,
        kind: ErrorKind,
        message: str,
        line_num: int,
        raw: Optional[str] = None,
    ) -> None:
        msg = (
            "CSVStreamError(" +
            f"kind={kind}, line={line_num}, raw={raw!r}): {message}"
        )
        super().__init__(msg)
        self.kind = kind
        self.message = message
        self.line_num = line_num    # 1-based logical line number
        self.raw = raw              # offending line text, if any

    @classmethod
    def from_event(cls, event: ErrorEvent) -> CSVStreamError:
        return cls(kind=event.kind, message=event.message, line_num=event.line_num, raw=event.raw)


class CollectAbortError(RuntimeError):
    """Raised by collect() when the reducer callback raised; chained to the exception it raised."""


# ----------------------------
# Configuration
# ----------------------------

BOM = "\ufeff"
DEFAULT_DELIMITER = ","
DEFAULT_PROGRESS_INTERVAL = 1000
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_INVALID_ROWS = 100

_RESERVED_DELIMITERS = {'"', "\n", "\r"}


def normalize_header(value: str) -> str:
    """Drop one leading byte-order mark, then trim surrounding whitespace."""
    if value.startswith(BOM):
        value = value[1:]
    return value.strip()


def _header_list(values: Sequence[str], what: str) -> Tuple[str, ...]:
    if isinstance(values, str):
        raise TypeError(f"{what} must be a sequence of names, not a str")
    names = tuple(normalize_header(v) for v in values)
    if not names:
        raise ValueError(f"{what} must not be empty")
    return names


@dataclass(frozen=True)
class CaptureHeaders:
    """The first non-blank line is the header row."""


@dataclass(frozen=True)
class ValidateHeaders:
    """The first non-blank line must match `expected` exactly (count, then position)."""

    expected: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "expected", _header_list(self.expected, "expected headers"))


@dataclass(frozen=True)
class NumericKeys:
    """No header row; row keys are "1", "2", "3", ... by field position."""


@dataclass(frozen=True)
class FixedHeaders:
    """No header row; `headers` key every line, including the first."""

    headers: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _header_list(self.headers, "fixed headers"))


HeaderMode = Union[CaptureHeaders, ValidateHeaders, NumericKeys, FixedHeaders]
_HEADER_MODES = (CaptureHeaders, ValidateHeaders, NumericKeys, FixedHeaders)


def _header_mode_from_flags(has_headers: bool, headers: Optional[Sequence[str]]) -> HeaderMode:
    if has_headers:
        return CaptureHeaders() if headers is None else ValidateHeaders(headers)
    return NumericKeys() if headers is None else FixedHeaders(headers)


@dataclass(frozen=True)
class ParserConfig:
    delimiter: str = DEFAULT_DELIMITER
    header_mode: HeaderMode = field(default_factory=CaptureHeaders)
    strict_columns: bool = False
    # False: a rejected row is reported and skipped, parsing continues
    halt_on_column_error: bool = True
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL  # rows; 0 disables
    total_bytes: Optional[int] = None

    def __post_init__(self) -> None:
        if len(self.delimiter) != 1:
            raise ValueError(f"delimiter must be a single character, got {self.delimiter!r}")
        if self.delimiter in _RESERVED_DELIMITERS:
            raise ValueError(f"delimiter cannot be {self.delimiter!r}")
        if not isinstance(self.header_mode, _HEADER_MODES):
            raise TypeError(f"Unsupported header mode: {self.header_mode!r}")
        if self.progress_interval < 0:
            raise ValueError(f"progress_interval must be >= 0, got {self.progress_interval}")
        if self.total_bytes is not None and self.total_bytes < 0:
            raise ValueError(f"total_bytes must be >= 0, got {self.total_bytes}")

    @classmethod
    def from_options(
        cls,
        *,
        delimiter: str = DEFAULT_DELIMITER,
        header_mode: Optional[HeaderMode] = None,
        has_headers: bool = True,
        headers: Optional[Sequence[str]] = None,
        strict_columns: bool = False,
        halt_on_column_error: bool = True,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        total_bytes: Optional[int] = None,
    ) -> ParserConfig:
        """
        Build a config from keyword options.
        `has_headers`/`headers` is shorthand for a header mode:
            has_headers=True,  headers=None -> CaptureHeaders
            has_headers=True,  headers=[..] -> ValidateHeaders
            has_headers=False, headers=None -> NumericKeys
            has_headers=False, headers=[..] -> FixedHeaders
        """
        if header_mode is None:
            header_mode = _header_mode_from_flags(has_headers, headers)
        elif headers is not None:
            raise ValueError("Pass either header_mode or headers, not both")
        return cls(
            delimiter=delimiter,
            header_mode=header_mode,
            strict_columns=strict_columns,
            halt_on_column_error=halt_on_column_error,
            progress_interval=progress_interval,
            total_bytes=total_bytes,
        )


DEFAULT = ParserConfig()


# ----------------------------
# Field tokenizer
# ----------------------------

@dataclass(frozen=True)
class ParsedLine:
    fields: Optional[List[str]] = None
    error: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_line(line: str, delimiter: str = DEFAULT_DELIMITER) -> ParsedLine:
    """
    Split one logical line into fields.
    An empty line is one empty field. A quote left open at the end is UNBALANCED_QUOTES.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i, n = 0, len(line)

    while i < n:
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < n and line[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1

    if in_quotes:
        return ParsedLine(error=UNBALANCED_QUOTES)

    fields.append("".join(current))
    return ParsedLine(fields=fields)


# ----------------------------
# Chunk-boundary line scanner
# ----------------------------

def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


class LineScanner:
    """
    Turns fragments into logical lines, keeping quoted newlines inside their line.

    Only newly fed characters are scanned; the pending partial line and the
    quote state carry over to the next fragment.
    """

    def __init__(self) -> None:
        self._pending: List[str] = []
        self._in_quotes = False

    @property
    def in_quotes(self) -> bool:
        return self._in_quotes

    @property
    def pending(self) -> str:
        return "".join(self._pending)

    def feed(self, fragment: str) -> List[str]:
        lines: List[str] = []
        in_quotes = self._in_quotes
        start = 0
        i, n = 0, len(fragment)

        while i < n:
            ch = fragment[i]
            if ch == '"':
                # A '""' pair split by a fragment boundary toggles twice instead;
                # the resulting state is the same.
                if in_quotes and i + 1 < n and fragment[i + 1] == '"':
                    i += 2
                    continue
                in_quotes = not in_quotes
            elif ch == "\n" and not in_quotes:
                self._pending.append(fragment[start:i])
                lines.append(_strip_cr("".join(self._pending)))
                self._pending = []
                start = i + 1
            i += 1

        if start < n:
            self._pending.append(fragment[start:])
        self._in_quotes = in_quotes
        return lines

    def flush(self) -> Optional[str]:
        """Return the unterminated remainder as a final line, or None if nothing is pending."""
        if not self._pending:
            return None
        line = _strip_cr("".join(self._pending))
        self._pending = []
        self._in_quotes = False
        return line


# ----------------------------
# Rows and notifications
# ----------------------------

@dataclass(frozen=True)
class RowRecord:
    row_num: int                # 1-based data row number (header/blank lines excluded)
    line_num: int               # 1-based logical line number
    fields: Dict[str, str]      # header (or "1", "2", ...) -> value
    raw: str                    # logical line text, terminator removed
    values: List[str]           # all parsed values, including overflow
    column_count: int


@dataclass(frozen=True)
class HeadersEvent:
    headers: List[str]
    line_num: int


@dataclass(frozen=True)
class RowEvent:
    record: RowRecord

    @property
    def row_num(self) -> int:
        return self.record.row_num

    @property
    def fields(self) -> Dict[str, str]:
        return self.record.fields

    @property
    def raw(self) -> str:
        return self.record.raw


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    message: str
    line_num: int
    raw: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    bytes_processed: int
    total_bytes: Optional[int]
    line_num: int
    row_num: int

    @property
    def ratio(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return min(1.0, self.bytes_processed / self.total_bytes)


@dataclass(frozen=True)
class EndEvent:
    total_rows: int
    total_lines: int


EVENT_KINDS: Tuple[str, ...] = ("headers", "row", "error", "progress", "end")

Listener = Callable[[Any], Any]
RowSink = Callable[[RowRecord], Any]


class CancelFlag(Protocol):
    def is_set(self) -> bool: ...


# ----------------------------
# Fragment sources
# ----------------------------

FragmentSource = Union[str, bytes, bytearray, os.PathLike, Any]


def _decode(chunks: Iterable[Union[str, bytes, bytearray]], encoding: str) -> Iterator[str]:
    decoder = codecs.getincrementaldecoder(encoding)()
    for chunk in chunks:
        if isinstance(chunk, (bytes, bytearray)):
            text = decoder.decode(chunk)
        else:
            text = chunk
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


def _read_chunks(f: Any, chunk_size: int) -> Iterator[Union[str, bytes]]:
    while True:
        chunk = f.read(chunk_size)
        if not chunk:
            return
        yield chunk


def iter_fragments(
    source: FragmentSource,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    encoding: str = "utf-8",
) -> Iterator[str]:
    """
    Yield text fragments from a str, bytes, path, file object, or iterable of str/bytes.
    Bytes are decoded incrementally, so multibyte characters may straddle chunks.
    A plain str is CSV text, never a filename; pass a pathlib.Path for files.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    if isinstance(source, str):
        for start in range(0, len(source), chunk_size):
            yield source[start:start + chunk_size]
        return

    if isinstance(source, (bytes, bytearray)):
        view = bytes(source)
        yield from _decode(
            (view[start:start + chunk_size] for start in range(0, len(view), chunk_size)),
            encoding,
        )
        return

    if isinstance(source, os.PathLike):
        with open(source, "rb") as f:
            yield from _decode(_read_chunks(f, chunk_size), encoding)
        return

    if hasattr(source, "read"):
        yield from _decode(_read_chunks(source, chunk_size), encoding)
        return

    yield from _decode(source, encoding)


def source_size(source: FragmentSource, encoding: str = "utf-8") -> Optional[int]:
    """Encoded size of `source` in bytes when it is cheap to know, else None."""
    if isinstance(source, str):
        return len(source.encode(encoding))
    if isinstance(source, (bytes, bytearray)):
        return len(source)
    if isinstance(source, os.PathLike):
        return os.path.getsize(source)
    return None


# ----------------------------
# Stream orchestrator
# ----------------------------

class CSVStream:
    """
    Push-driven CSV parser. Feed fragments in order, then close().

    Notifications go to listeners registered with on(kind, listener), in line order:
        headers -> HeadersEvent
        row -> RowEvent
        error -> ErrorEvent
        progress -> ProgressEvent (every `progress_interval` rows)
        end -> EndEvent (only after a clean close)
    Materialized rows are also returned from feed()/close() and passed to `sink`.
    """

    def __init__(
        self,
        config: Optional[ParserConfig] = None,
        *,
        sink: Optional[RowSink] = None,
        cancel: Optional[CancelFlag] = None,
        **options: Any,
    ) -> None:
        if config is None:
            config = ParserConfig.from_options(**options)
        elif options:
            raise TypeError("Pass either a ParserConfig or keyword options, not both")

        self._config = config
        self._sink = sink
        self._cancel = cancel
        self._scanner = LineScanner()
        self._listeners: Dict[str, List[Listener]] = {kind: [] for kind in EVENT_KINDS}

        mode = config.header_mode
        self._headers: Optional[List[str]] = list(mode.headers) if isinstance(mode, FixedHeaders) else None
        self._awaiting_header = isinstance(mode, (CaptureHeaders, ValidateHeaders))

        self._line_num = 0
        self._row_num = 0
        self._bytes_processed = 0
        self._last_progress_row = 0
        self._total_bytes = config.total_bytes
        self._failed = False
        self._cancel_requested = False
        self._cancelled = False
        self._closed = False

    # -- state --

    @property
    def config(self) -> ParserConfig:
        return self._config

    @property
    def headers(self) -> Optional[List[str]]:
        return None if self._headers is None else list(self._headers)

    @property
    def line_num(self) -> int:
        return self._line_num

    @property
    def row_num(self) -> int:
        return self._row_num

    @property
    def bytes_processed(self) -> int:
        return self._bytes_processed

    @property
    def total_bytes(self) -> Optional[int]:
        return self._total_bytes

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def cancelled(self) -> bool:
        return self._halted() and not self._failed

    @property
    def closed(self) -> bool:
        return self._closed

    # -- subscriptions --

    def _listeners_for(self, kind: str) -> List[Listener]:
        try:
            return self._listeners[kind]
        except KeyError:
            raise ValueError(f"Unknown event kind {kind!r}; expected one of {EVENT_KINDS}") from None

    def on(self, kind: str, listener: Listener) -> CSVStream:
        self._listeners_for(kind).append(listener)
        return self

    def off(self, kind: str, listener: Listener) -> CSVStream:
        listeners = self._listeners_for(kind)
        if listener in listeners:
            listeners.remove(listener)
        return self

    def _emit(self, kind: str, event: Any) -> None:
        for listener in list(self._listeners[kind]):
            listener(event)

    # -- driving --

    def cancel(self) -> None:
        """Stop processing at the next line boundary. Already emitted notifications stand."""
        self._cancel_requested = True

    def _halted(self) -> bool:
        if not self._cancelled and (
            self._cancel_requested or (self._cancel is not None and self._cancel.is_set())
        ):
            self._cancelled = True
            logger.info("CSV stream cancelled", line_num=self._line_num, row_num=self._row_num)
        return self._failed or self._cancelled

    def feed(self, fragment: str) -> List[RowRecord]:
        """Consume one fragment; return the rows it completed, in order."""
        if self._closed:
            raise RuntimeError("Cannot feed a closed CSVStream")
        if self._halted():
            return []

        self._bytes_processed += len(fragment.encode("utf-8"))
        rows: List[RowRecord] = []
        for line in self._scanner.feed(fragment):
            if self._halted():
                break
            record = self._process_line(line)
            if record is not None:
                rows.append(record)
        return rows

    def close(self) -> List[RowRecord]:
        """Signal end of input: process the pending partial line, then emit "end"."""
        if self._closed:
            return []
        self._closed = True
        if self._halted():
            return []

        rows: List[RowRecord] = []
        tail = self._scanner.flush()
        if tail is not None:
            record = self._process_line(tail)
            if record is not None:
                rows.append(record)
        if self._halted():
            return rows

        logger.debug("CSV stream ended", total_rows=self._row_num, total_lines=self._line_num)
        self._emit("end", EndEvent(total_rows=self._row_num, total_lines=self._line_num))
        return rows

    def iter_rows(self, fragments: Iterable[str]) -> Iterator[RowRecord]:
        """Drive the stream over `fragments` to completion, yielding rows as they complete."""
        for fragment in fragments:
            yield from self._until_cancelled(self.feed(fragment))
            if self._halted():
                return
        yield from self._until_cancelled(self.close())

    def _until_cancelled(self, records: List[RowRecord]) -> Iterator[RowRecord]:
        # A consumer may cancel while holding a row; the rest of the batch is dropped.
        for record in records:
            yield record
            if self._halted() and self._cancelled:
                return

    def run(
        self,
        source: FragmentSource,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        encoding: str = "utf-8",
    ) -> Iterator[RowRecord]:
        """Like iter_rows() over iter_fragments(source); fills total_bytes when it is unset."""
        if self._total_bytes is None:
            self._total_bytes = source_size(source, encoding)
        return self.iter_rows(iter_fragments(source, chunk_size=chunk_size, encoding=encoding))

    async def aiter_rows(
        self,
        fragments: AsyncIterable[Union[str, bytes]],
        *,
        encoding: str = "utf-8",
    ) -> AsyncIterator[RowRecord]:
        """Async driver; bytes fragments are decoded incrementally."""
        decoder = None
        async for fragment in fragments:
            if isinstance(fragment, (bytes, bytearray)):
                if decoder is None:
                    decoder = codecs.getincrementaldecoder(encoding)()
                fragment = decoder.decode(fragment)
            for record in self._until_cancelled(self.feed(fragment)):
                yield record
            if self._halted():
                return
        if decoder is not None:
            for record in self._until_cancelled(self.feed(decoder.decode(b"", final=True))):
                yield record
            if self._halted():
                return
        for record in self._until_cancelled(self.close()):
            yield record

    # -- pipeline --

    def _process_line(self, line: str) -> Optional[RowRecord]:
        self._line_num += 1
        if line.strip() == "":
            return None

        parsed = parse_line(line, self._config.delimiter)
        if not parsed.ok:
            self._fail(UNBALANCED_QUOTES, f"CSV parsing error: {parsed.error}", line)
            return None
        fields: List[str] = parsed.fields if parsed.fields is not None else [""]

        if self._awaiting_header:
            self._resolve_headers(fields, line)
            return None
        return self._materialize(fields, line)

    def _resolve_headers(self, fields: List[str], line: str) -> None:
        self._awaiting_header = False
        found = [normalize_header(f) if i == 0 else f.strip() for i, f in enumerate(fields)]

        mode = self._config.header_mode
        if isinstance(mode, ValidateHeaders):
            expected = list(mode.expected)
            if len(expected) != len(found) or expected != found:
                self._fail(
                    HEADER_MISMATCH,
                    f"Header mismatch: expected [{', '.join(expected)}], got [{', '.join(found)}]",
                    line,
                )
                return
            found = expected

        self._headers = found
        logger.debug("CSV headers resolved", headers=found, line_num=self._line_num)
        self._emit("headers", HeadersEvent(headers=list(found), line_num=self._line_num))

    def _materialize(self, fields: List[str], line: str) -> Optional[RowRecord]:
        headers = self._headers
        if headers is None:
            mapping = {str(i + 1): value for i, value in enumerate(fields)}
        else:
            width = len(headers)
            if self._config.strict_columns and any(f.strip() for f in fields[width:]):
                message = f"Row {self._row_num + 1} has {len(fields)} columns but expected {width}"
                if self._config.halt_on_column_error:
                    self._fail(COLUMN_COUNT_EXCEEDED, message, line)
                else:
                    self._report(COLUMN_COUNT_EXCEEDED, message, line)
                return None
            mapping = {h: (fields[i] if i < len(fields) else "") for i, h in enumerate(headers)}

        self._row_num += 1
        record = RowRecord(
            row_num=self._row_num,
            line_num=self._line_num,
            fields=mapping,
            raw=line,
            values=fields,
            column_count=len(fields),
        )
        self._emit("row", RowEvent(record=record))
        self._maybe_emit_progress()
        if self._sink is not None:
            self._sink(record)
        return record

    def _maybe_emit_progress(self) -> None:
        interval = self._config.progress_interval
        if interval == 0 or self._row_num - self._last_progress_row < interval:
            return
        self._last_progress_row = self._row_num
        self._emit(
            "progress",
            ProgressEvent(
                bytes_processed=self._bytes_processed,
                total_bytes=self._total_bytes,
                line_num=self._line_num,
                row_num=self._row_num,
            ),
        )

    def _fail(self, kind: ErrorKind, message: str, raw: str) -> None:
        self._failed = True
        self._report(kind, message, raw)

    def _report(self, kind: ErrorKind, message: str, raw: str) -> None:
        logger.warning("CSV parse error", kind=kind, line_num=self._line_num, message=message)
        self._emit("error", ErrorEvent(kind=kind, message=message, line_num=self._line_num, raw=raw))


def stream_rows(
    source: FragmentSource,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    encoding: str = "utf-8",
    **stream_options: Any,
) -> Iterator[RowRecord]:
    """Parse `source` and yield RowRecords. Errors stop the iteration silently; use CSVStream.on("error") to see them."""
    return CSVStream(**stream_options).run(source, chunk_size=chunk_size, encoding=encoding)


def astream_rows(
    fragments: AsyncIterable[Union[str, bytes]],
    *,
    encoding: str = "utf-8",
    **stream_options: Any,
) -> AsyncIterator[RowRecord]:
    return CSVStream(**stream_options).aiter_rows(fragments, encoding=encoding)


# ----------------------------
# collect()
# ----------------------------

T = TypeVar("T")


def collect(
    source: FragmentSource,
    callback: Callable[[T, Dict[str, str]], T],
    initial: T,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    encoding: str = "utf-8",
    **stream_options: Any,
) -> T:
    """
    Fold row mappings into an accumulator: acc = callback(acc, row.fields).
    Raises CSVStreamError if the stream reported an error, CollectAbortError if callback raised.
    """
    stream = CSVStream(**stream_options)
    errors: List[ErrorEvent] = []
    stream.on("error", errors.append)

    accumulated = initial
    for record in stream.run(source, chunk_size=chunk_size, encoding=encoding):
        try:
            accumulated = callback(accumulated, record.fields)
        except Exception as e:
            raise CollectAbortError(str(e) or "Collection aborted") from e

    if errors:
        raise CSVStreamError.from_event(errors[0])
    return accumulated


# ----------------------------
# validate()
# ----------------------------

@dataclass(frozen=True)
class InvalidRow:
    row_num: int
    errors: List[str]
    raw: str


@dataclass(frozen=True)
class FatalError:
    kind: ErrorKind
    message: str
    line_num: int


@dataclass(frozen=True)
class ValidateProgress:
    row_count: int
    invalid_row_count: int
    line_num: int
    bytes_processed: Optional[int] = None
    total_bytes: Optional[int] = None


@dataclass
class ValidateResult:
    valid: bool
    row_count: int
    invalid_row_count: int
    invalid_rows: List[InvalidRow] = field(default_factory=list)
    fatal_error: Optional[FatalError] = None
    cancelled: bool = False


RowValidator = Callable[[RowRecord], Optional[Sequence[str]]]
ProgressCallback = Callable[[ValidateProgress], Any]


def validate(
    source: FragmentSource,
    on_row: Optional[RowValidator] = None,
    on_progress: Optional[ProgressCallback] = None,
    *,
    required_headers: Optional[Sequence[str]] = None,
    max_invalid_rows: int = DEFAULT_MAX_INVALID_ROWS,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    encoding: str = "utf-8",
    **stream_options: Any,
) -> ValidateResult:
    """
    Validate `source` row by row.
    - on_row(record) returns error strings; empty or None means the row is valid.
    - required_headers must match the resolved headers exactly, in order.
    - At most `max_invalid_rows` InvalidRow entries are kept; all are counted.
    - A clean stream with zero data rows is a NO_DATA_ROWS fatal error.
    I/O and decoding failures while reading `source` become a STREAM_ERROR.
    """
    if max_invalid_rows < 0:
        raise ValueError(f"max_invalid_rows must be >= 0, got {max_invalid_rows}")
    required = None if required_headers is None else [normalize_header(h) for h in required_headers]

    stream = CSVStream(**stream_options)
    cancel: Optional[CancelFlag] = stream_options.get("cancel")

    row_count = 0
    invalid_rows: List[InvalidRow] = []
    invalid_row_count = 0
    fatal: List[FatalError] = []
    headers_accepted = required is None
    ended = False

    def progress(line_num: int) -> None:
        if on_progress is not None:
            on_progress(ValidateProgress(
                row_count=row_count,
                invalid_row_count=invalid_row_count,
                line_num=line_num,
                bytes_processed=stream.bytes_processed,
                total_bytes=stream.total_bytes,
            ))

    def on_headers(event: HeadersEvent) -> None:
        nonlocal headers_accepted
        if required is not None:
            found = [normalize_header(h) for h in event.headers]
            if found != required:
                fatal.append(FatalError(
                    kind=HEADER_MISMATCH,
                    message=(
                        "CSV headers do not match required headers. "
                        f"Expected: [{', '.join(required)}], got: [{', '.join(found)}]"
                    ),
                    line_num=event.line_num,
                ))
                stream.cancel()
                return
            headers_accepted = True
        progress(event.line_num)

    def on_error(event: ErrorEvent) -> None:
        if not fatal:
            fatal.append(FatalError(kind=event.kind, message=event.message, line_num=event.line_num))
        progress(event.line_num)

    def on_end(event: EndEvent) -> None:
        nonlocal ended
        ended = True

    stream.on("headers", on_headers).on("error", on_error).on("end", on_end)

    rows = stream.run(source, chunk_size=chunk_size, encoding=encoding)
    while True:
        # Only reading the source is guarded; on_row errors propagate.
        try:
            record = next(rows)
        except StopIteration:
            break
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("CSV source read failed", error=str(e))
            fatal.append(FatalError(kind=STREAM_ERROR, message=str(e), line_num=0))
            break

        row_count += 1
        errors = list(on_row(record) or ()) if on_row is not None else []
        if errors:
            invalid_row_count += 1
            if len(invalid_rows) < max_invalid_rows:
                invalid_rows.append(InvalidRow(row_num=record.row_num, errors=errors, raw=record.raw))
        progress(record.line_num)

    if ended and not fatal and row_count == 0 and headers_accepted:
        fatal.append(FatalError(kind=NO_DATA_ROWS, message="CSV must contain at least one data row.", line_num=1))

    fatal_error = fatal[0] if fatal else None
    return ValidateResult(
        valid=fatal_error is None and invalid_row_count == 0,
        row_count=row_count,
        invalid_row_count=invalid_row_count,
        invalid_rows=invalid_rows,
        fatal_error=fatal_error,
        cancelled=cancel is not None and cancel.is_set(),
    )


# ----------------------------
# Field validators
# ----------------------------

FieldValidator = Callable[[str, str], Optional[str]]

_BOOL_LITERALS: Tuple[str, ...] = ("true", "false", "yes", "no", "1", "0", "y", "n")
_SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")


def required(message: Optional[str] = None) -> FieldValidator:
    def check(value: str, field_name: str) -> Optional[str]:
        if value.strip() == "":
            return message or f"{field_name} is required"
        return None
    return check


def number(
    *,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    integer: bool = False,
    message: Optional[str] = None,
) -> FieldValidator:
    """Numeric check; blank values pass (combine with required())."""
    def check(value: str, field_name: str) -> Optional[str]:
        if value.strip() == "":
            return None
        try:
            num = float(value)
        except ValueError:
            return message or f"{field_name} must be a valid number"
        if math.isnan(num):
            return message or f"{field_name} must be a valid number"
        if integer and not num.is_integer():
            return message or f"{field_name} must be an integer"
        if min_value is not None and num < min_value:
            return message or f"{field_name} must be at least {min_value}"
        if max_value is not None and num > max_value:
            return message or f"{field_name} must be at most {max_value}"
        return None
    return check


def pattern(regex: Union[str, Pattern[str]], message: Optional[str] = None) -> FieldValidator:
    """re.search semantics; anchor the pattern to match the whole value."""
    compiled = re.compile(regex)

    def check(value: str, field_name: str) -> Optional[str]:
        if value.strip() == "":
            return None
        if compiled.search(value) is None:
            return message or f"{field_name} does not match the required pattern"
        return None
    return check


def _parse_slash_date(value: str, *, day_first: bool) -> Optional[datetime]:
    m = _SLASH_DATE_RE.match(value)
    if m is None:
        return None
    a, b, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
    day, month = (a, b) if day_first else (b, a)
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def date(
    fmt: str = "iso",
    *,
    before: Optional[datetime] = None,
    after: Optional[datetime] = None,
    message: Optional[str] = None,
) -> FieldValidator:
    """
    Date check. fmt: "iso" (datetime.fromisoformat), "us" (MM/DD/YYYY), "eu" (DD/MM/YYYY).
    before/after are exclusive bounds.
    """
    if fmt not in ("iso", "us", "eu"):
        raise ValueError(f"Unsupported date format: {fmt!r}")
    label = {"iso": "", "us": " (MM/DD/YYYY)", "eu": " (DD/MM/YYYY)"}[fmt]

    def check(value: str, field_name: str) -> Optional[str]:
        if value.strip() == "":
            return None
        if fmt == "iso":
            try:
                parsed: Optional[datetime] = datetime.fromisoformat(value.strip())
            except ValueError:
                parsed = None
        else:
            parsed = _parse_slash_date(value.strip(), day_first=(fmt == "eu"))
        if parsed is None:
            return message or f"{field_name} must be a valid date{label}"
        if before is not None and parsed >= before:
            return message or f"{field_name} must be before {before.isoformat()}"
        if after is not None and parsed <= after:
            return message or f"{field_name} must be after {after.isoformat()}"
        return None
    return check


def boolean(message: Optional[str] = None) -> FieldValidator:
    def check(value: str, field_name: str) -> Optional[str]:
        if value.strip() == "":
            return None
        if value.lower() not in _BOOL_LITERALS:
            return message or f"{field_name} must be a boolean value (true/false, yes/no, 1/0)"
        return None
    return check


def one_of(choices: Iterable[str], message: Optional[str] = None) -> FieldValidator:
    allowed = set(choices)

    def check(value: str, field_name: str) -> Optional[str]:
        if value.strip() == "":
            return None
        if value not in allowed:
            return message or f"{field_name} must be one of {sorted(allowed)!r}"
        return None
    return check


# ----------------------------
# Schema validation
# ----------------------------

@dataclass(frozen=True)
class ColumnSchema:
    name: str
    validators: Sequence[FieldValidator] = ()
    aliases: Sequence[str] = ()


@dataclass(frozen=True)
class CSVSchema:
    columns: Sequence[ColumnSchema]
    allow_extra_columns: bool = True
    allow_reordering: bool = True
    delimiter: str = DEFAULT_DELIMITER


SimpleSchema = Mapping[str, Sequence[FieldValidator]]


def _as_schema(schema: Union[CSVSchema, SimpleSchema]) -> CSVSchema:
    if isinstance(schema, CSVSchema):
        return schema
    return CSVSchema(columns=[ColumnSchema(name=name, validators=tuple(vs)) for name, vs in schema.items()])


def _schema_row_validator(schema: CSVSchema) -> RowValidator:
    lookup: Dict[str, ColumnSchema] = {}
    for col in schema.columns:
        lookup[col.name.lower()] = col
        for alias in col.aliases:
            lookup[alias.lower()] = col

    def check(record: RowRecord) -> List[str]:
        errors: List[str] = []
        seen = set()
        for name, value in record.fields.items():
            col = lookup.get(name.lower())
            if col is None:
                if not schema.allow_extra_columns:
                    errors.append(f"Unexpected column: {name}")
                continue
            seen.add(col.name)
            for validator in col.validators:
                error = validator(value, col.name)
                if error:
                    errors.append(error)

        # Missing columns: validators see "", so only required() complains
        for col in schema.columns:
            if col.name in seen:
                continue
            for validator in col.validators:
                error = validator("", col.name)
                if error:
                    errors.append(error)
        return errors

    return check


def validate_schema(
    source: FragmentSource,
    schema: Union[CSVSchema, SimpleSchema],
    *,
    max_invalid_rows: int = DEFAULT_MAX_INVALID_ROWS,
    cancel: Optional[CancelFlag] = None,
    on_progress: Optional[ProgressCallback] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    encoding: str = "utf-8",
) -> ValidateResult:
    """Validate a headed CSV against per-column validators. Names and aliases match case-insensitively."""
    s = _as_schema(schema)
    return validate(
        source,
        _schema_row_validator(s),
        on_progress,
        required_headers=None if s.allow_reordering else [c.name for c in s.columns],
        max_invalid_rows=max_invalid_rows,
        chunk_size=chunk_size,
        encoding=encoding,
        delimiter=s.delimiter,
        cancel=cancel,
    )


def create_validator(schema: Union[CSVSchema, SimpleSchema]) -> Callable[..., ValidateResult]:
    """Reusable validate_schema() bound to `schema`."""
    s = _as_schema(schema)

    def run(source: FragmentSource, **kwargs: Any) -> ValidateResult:
        return validate_schema(source, s, **kwargs)
    return run


# ----------------------------
# Writers
# ----------------------------

WriteRow = Union[Sequence[Any], Mapping[str, Any]]


def _format_value(v: Any) -> Any:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    return v


class _LineFormatter:
    """Formats one row as a CSV line (no terminator) via csv.writer."""

    def __init__(self, delimiter: str, quote_all: bool) -> None:
        self._quote_all = quote_all
        self._buf = io.StringIO()
        # "\r\n" as terminator makes QUOTE_MINIMAL quote both '\r' and '\n'.
        self._csv = csv.writer(
            self._buf,
            delimiter=delimiter,
            quotechar='"',
            doublequote=True,
            lineterminator="\r\n",
            quoting=csv.QUOTE_ALL if quote_all else csv.QUOTE_MINIMAL,
        )

    def __call__(self, values: Iterable[Any]) -> str:
        self._buf.seek(0)
        self._buf.truncate(0)
        cells = [_format_value(v) for v in values]
        # csv.writer quotes a lone empty cell; minimal quoting writes it as an empty line.
        if not self._quote_all and len(cells) == 1 and cells[0] == "":
            return ""
        self._csv.writerow(cells)
        return self._buf.getvalue()[:-2]


def _row_values(row: WriteRow, headers: Optional[Sequence[str]]) -> List[Any]:
    if isinstance(row, Mapping):
        keys = headers if headers is not None else list(row.keys())
        return [row.get(h) for h in keys]
    if isinstance(row, str):
        raise TypeError("A row must be a sequence of values or a mapping, not a str")
    return list(row)


def iter_csv(
    rows: Iterable[WriteRow],
    *,
    delimiter: str = DEFAULT_DELIMITER,
    line_ending: str = "\r\n",
    quote_all: bool = False,
    headers: Optional[Sequence[str]] = None,
    include_headers: bool = True,
) -> Iterator[str]:
    """
    Yield terminated CSV lines. Mapping rows take `headers` from the first row when not given.
    The header line (if any) precedes the first row.
    """
    fmt = _LineFormatter(delimiter, quote_all)
    columns = list(headers) if headers is not None else None
    header_sent = False

    for row in rows:
        if columns is None and isinstance(row, Mapping):
            columns = list(row.keys())
        if include_headers and columns is not None and not header_sent:
            yield fmt(columns) + line_ending
            header_sent = True
        yield fmt(_row_values(row, columns)) + line_ending


def to_csv(
    rows: Iterable[WriteRow],
    *,
    delimiter: str = DEFAULT_DELIMITER,
    line_ending: str = "\r\n",
    quote_all: bool = False,
    headers: Optional[Sequence[str]] = None,
    include_headers: bool = True,
) -> str:
    """Serialize rows to CSV text; lines are joined by `line_ending` with no trailing terminator."""
    lines = iter_csv(
        rows,
        delimiter=delimiter,
        line_ending="",
        quote_all=quote_all,
        headers=headers,
        include_headers=include_headers,
    )
    return line_ending.join(lines)


__all__ = [
    "CSVStreamError",
    "CollectAbortError",
    "UNBALANCED_QUOTES",
    "HEADER_MISMATCH",
    "COLUMN_COUNT_EXCEEDED",
    "STREAM_ERROR",
    "NO_DATA_ROWS",
    "CaptureHeaders",
    "ValidateHeaders",
    "NumericKeys",
    "FixedHeaders",
    "ParserConfig",
    "DEFAULT",
    "normalize_header",
    "ParsedLine",
    "parse_line",
    "LineScanner",
    "RowRecord",
    "HeadersEvent",
    "RowEvent",
    "ErrorEvent",
    "ProgressEvent",
    "EndEvent",
    "EVENT_KINDS",
    "CSVStream",
    "iter_fragments",
    "source_size",
    "stream_rows",
    "astream_rows",
    "collect",
    "InvalidRow",
    "FatalError",
    "ValidateProgress",
    "ValidateResult",
    "validate",
    "required",
    "number",
    "pattern",
    "date",
    "boolean",
    "one_of",
    "ColumnSchema",
    "CSVSchema",
    "validate_schema",
    "create_validator",
    "to_csv",
    "iter_csv",
    "__version__",
]
