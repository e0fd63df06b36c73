#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Deduplicate paired-end alignments by read sequence instead of mapping position.

Each mate pair is reduced to a key made of the first 50 bases of read 1 and the
first 50 bases of the reverse complement of read 2. The first pair carrying a
key is kept; every later pair with the same key is dropped. Input must keep
mates adjacent (read 1 directly followed by read 2), so position-sorted files
are rejected up front.

Memory grows with the number of distinct keys in a file (O(unique pairs)).
Very large libraries need correspondingly large memory.
"""

from __future__ import annotations

import argparse
import gzip
import re
import sys
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from itertools import islice
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple, TextIO

import polars as pl
import pysam
from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Leading bases of each mate that make up the duplicate key
KEY_PREFIX_LEN: int = 50
KEY_SEPARATOR = ":"

# Pre-flight ordering scan covers this many data-line pairs
PAIR_SCAN_LIMIT: int = 100_000

# Decoder diagnostics inspected by the truncation check
DIAGNOSTIC_LINE_LIMIT: int = 10

# Emit a progress debug line after examining this many pairs
DEBUG_EVERY: int = 1_000_000

# Mandatory SAM columns; the sequence is column 10
MIN_SAM_FIELDS: int = 11

# SAM flag bit: template has multiple segments
FLAG_PAIRED: int = 0x1

COMPLEMENT = str.maketrans("GCAT", "CGTA")
HEADER_LINE = re.compile(r"^@[A-Za-z][A-Za-z0-9]\t")
MATE_SUFFIX = re.compile(r"/[12]$")
HTSLIB_DIAGNOSTIC = re.compile(r"\[[A-Z]::[^\n]*")
TRUNCATION_WORDS = re.compile(r"\b(?:EOF|truncated)\b")


# -------------------------------- ERRORS ----------------------------------- #


class DedupError(Exception):
    """Base class for errors that abort processing of one input file."""


class StreamTruncatedError(DedupError):
    """The decoder reports a premature end of stream."""


class StreamEmptyError(DedupError):
    """The input produces no lines at all."""


class StreamPositionSortedError(DedupError):
    """A header declares coordinate sort order, so mates are not adjacent."""


class MatePairMismatchError(DedupError):
    """Two consecutive data lines do not belong to the same fragment."""


class MalformedPairingError(DedupError):
    """An odd number of data lines leaves read 1 without its mate."""


class MalformedRecordError(DedupError):
    """A data line is not a usable SAM record."""


class UnsupportedLibraryModeError(DedupError):
    """Single-end input reached the paired-end deduplicator."""


class IOFailureError(DedupError):
    """An input, output or report handle could not be opened, read or written."""


class UnsupportedFormatError(DedupError, ValueError):
    """The file extension maps to no known alignment format."""


# ------------------------------- DATA TYPES -------------------------------- #


class LibraryMode(Enum):
    """Sequencing layout of an input file, decided before deduplication."""

    PAIRED_END = auto()
    SINGLE_END = auto()


class Verdict(Enum):
    """Outcome of examining one mate pair."""

    EMIT = auto()
    DROP = auto()


class RecordFormat(Enum):
    """Alignment formats understood by the record source and sink."""

    SAM = ".sam"
    SAM_GZ = ".sam.gz"
    BAM = ".bam"
    CRAM = ".cram"

    @staticmethod
    def from_path(path: str | Path) -> RecordFormat:
        """Determine the format from the filename extension."""
        lower = str(path).lower()
        # .sam.gz before .sam so the longer suffix wins
        for fmt in (RecordFormat.SAM_GZ, RecordFormat.SAM, RecordFormat.BAM, RecordFormat.CRAM):
            if lower.endswith(fmt.value):
                return fmt
        msg = f"'{path}' must end with .sam, .sam.gz, .bam, or .cram"
        logger.error(msg)
        raise UnsupportedFormatError(msg)

    @property
    def is_container(self) -> bool:
        return self in (RecordFormat.BAM, RecordFormat.CRAM)

    def pysam_mode(self, write: bool) -> str:  # noqa: FBT001
        """pysam open mode for container formats."""
        match self:
            case RecordFormat.BAM:
                return "wb" if write else "rb"
            case RecordFormat.CRAM:
                return "wc" if write else "rc"
        msg = f"{self.name} is not decoded through pysam"
        raise ValueError(msg)


class AlignmentRecord(NamedTuple):
    """One decoded data line. `line` keeps the raw text for re-emission."""

    qname: str
    flag: int
    rname: str
    pos: int
    cigar: str
    seq: str
    line: str

    @classmethod
    def from_line(cls, line: str) -> AlignmentRecord:
        fields = line.split("\t", MIN_SAM_FIELDS)
        if len(fields) < MIN_SAM_FIELDS:
            msg = (
                f"Alignment record has {len(fields)} tab-separated fields, "
                f"expected at least {MIN_SAM_FIELDS}: {line[:80]!r}"
            )
            logger.error(msg)
            raise MalformedRecordError(msg)
        try:
            flag = int(fields[1])
            pos = int(fields[3])
        except ValueError as err:
            msg = f"Non-integer FLAG or POS in record '{fields[0]}': {err}"
            logger.error(msg)
            raise MalformedRecordError(msg) from err
        return cls(fields[0], flag, fields[2], pos, fields[5], fields[9], line)


class MatePair(NamedTuple):
    """Read 1 and read 2 of one fragment, in stream order."""

    read1: AlignmentRecord
    read2: AlignmentRecord


@dataclass
class RunCounters:
    """Per-file pair counters, updated as the stream is consumed."""

    total: int = 0
    removed: int = 0

    @property
    def retained(self) -> int:
        return self.total - self.removed

    @property
    def removed_pct(self) -> float | None:
        return None if self.total == 0 else self.removed / self.total * 100

    @property
    def retained_pct(self) -> float | None:
        return None if self.total == 0 else self.retained / self.total * 100


@dataclass
class DedupContext:
    """
    All mutable state for deduplicating one file. A fresh context is created
    per input and dropped afterwards; nothing in it is shared between files.
    """

    source_path: Path
    seen: set[str] = field(default_factory=set)
    counters: RunCounters = field(default_factory=RunCounters)


@dataclass(frozen=True)
class DedupConfig:
    """Run-wide options resolved from the command line."""

    output_dir: Path | None = None
    output_format: RecordFormat | None = None  # None keeps the input format
    reference: str | None = None
    prefix_length: int = KEY_PREFIX_LEN
    pair_scan_limit: int = PAIR_SCAN_LIMIT


def _format_pct(pct: float | None) -> str:
    return "N/A" if pct is None else f"{pct:.2f}"


@pydantic_dataclass(frozen=True)
class DedupReport:
    """Summary handed to the report writers for one deduplicated file."""

    file_name: str = Field(min_length=1)
    total_pairs: int = Field(ge=0)
    removed_pairs: int = Field(ge=0)
    removed_pct: str = Field(min_length=1)
    retained_pairs: int = Field(ge=0)
    retained_pct: str = Field(min_length=1)

    @classmethod
    def from_counters(cls, file_name: str, counters: RunCounters) -> DedupReport:
        return cls(
            file_name=file_name,
            total_pairs=counters.total,
            removed_pairs=counters.removed,
            removed_pct=_format_pct(counters.removed_pct),
            retained_pairs=counters.retained,
            retained_pct=_format_pct(counters.retained_pct),
        )

    def to_text(self) -> str:
        removed = "N/A" if self.total_pairs == 0 else f"{self.removed_pct}%"
        retained = "N/A" if self.total_pairs == 0 else f"{self.retained_pct}%"
        return (
            "Sequence-based deduplication report\n"
            "===================================\n"
            f"Input file:\t{self.file_name}\n"
            f"Total sequence pairs analysed:\t{self.total_pairs}\n"
            f"Duplicated sequence pairs removed:\t{self.removed_pairs} ({removed})\n"
            f"Sequence pairs retained:\t{self.retained_pairs} ({retained})\n"
        )


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ------------------------------ KEY BUILDER -------------------------------- #


def reverse_complement(seq: str) -> str:
    """
    Reverse `seq` and swap G<->C, A<->T. Any other symbol (N, IUPAC codes,
    lowercase bases) is left as it is.
    """
    return seq[::-1].translate(COMPLEMENT)


def build_key(read1_seq: str, read2_seq: str, prefix_length: int = KEY_PREFIX_LEN) -> str:
    """
    Duplicate key for a mate pair: the first `prefix_length` bases of read 1
    and of read 2's reverse complement, joined by ':'. Depends on nothing but
    the two sequences.
    """
    # Only the 3' tail of read 2 survives truncation after reversal
    rc_head = read2_seq[-prefix_length:][::-1].translate(COMPLEMENT)
    return f"{read1_seq[:prefix_length]}{KEY_SEPARATOR}{rc_head}"


# ----------------------------- I/O UTILITIES ------------------------------- #


def is_header_line(line: str) -> bool:
    """True for SAM header lines: '@', a two-letter tag, then a tab."""
    return HEADER_LINE.match(line) is not None


def strip_mate_suffix(qname: str) -> str:
    """Drop a trailing '/1' or '/2' mate marker from a read name."""
    return MATE_SUFFIX.sub("", qname)


def open_alignment(
    path: str,
    fmt: RecordFormat,
    write: bool,  # noqa: FBT001
    header: pysam.AlignmentHeader | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open a BAM/CRAM container through pysam. For CRAM, pass a reference
    filename. Writing requires the header the records will be encoded against.
    """
    mode = fmt.pysam_mode(write)

    kwargs = {}
    if fmt is RecordFormat.CRAM and reference is None:
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    if fmt is RecordFormat.CRAM and reference is not None:
        kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        assert header is not None, f"Writing to '{path}' requires a header but got None"
        return pysam.AlignmentFile(path, mode, header=header, **kwargs)
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


def _text_lines(handle: TextIO, path: str) -> Iterator[str]:
    try:
        for raw in handle:
            line = raw.rstrip("\r\n")
            if line:
                yield line
    except EOFError as err:
        msg = f"File '{path}' is truncated: {err}"
        logger.error(msg)
        raise StreamTruncatedError(msg) from err
    except UnicodeDecodeError as err:
        msg = f"File '{path}' is not UTF-8 SAM text: {err}"
        logger.error(msg)
        raise IOFailureError(msg) from err
    except OSError as err:
        msg = f"Failed reading '{path}': {err}"
        logger.error(msg)
        raise IOFailureError(msg) from err


def _container_lines(handle: pysam.AlignmentFile, path: str) -> Iterator[str]:
    yield from str(handle.header).splitlines()
    try:
        for aln in handle:
            yield aln.to_string()
    except OSError as err:
        msg = f"Failed decoding '{path}': {err}"
        logger.error(msg)
        raise IOFailureError(msg) from err


@contextmanager
def open_record_source(path: str | Path, reference: str | None = None) -> Iterator[Iterator[str]]:
    """
    Yield a lazy, single-pass iterator over the SAM text lines of `path`,
    header lines first. Lines carry no terminator. The underlying handle is
    closed when the block exits, whatever the exit path.
    """
    path = str(path)
    fmt = RecordFormat.from_path(path)
    try:
        match fmt:
            case RecordFormat.SAM:
                handle = open(path, encoding="utf-8")  # noqa: SIM115
            case RecordFormat.SAM_GZ:
                handle = gzip.open(path, "rt", encoding="utf-8")  # noqa: SIM115
            case _:
                handle = open_alignment(path, fmt, write=False, reference=reference)
    except (OSError, ValueError) as err:
        msg = f"Unable to open '{path}' for reading: {err}"
        logger.error(msg)
        raise IOFailureError(msg) from err

    try:
        if fmt.is_container:
            yield _container_lines(handle, path)
        else:
            yield _text_lines(handle, path)
    finally:
        handle.close()


class RecordSink:
    """
    Writes header lines and surviving mate pairs in SAM, SAM.gz, BAM or CRAM.

    Text output is written line for line as it arrives. Containers need the
    full header before the first record, so header lines are buffered until
    the first pair (or until close, for header-only output).
    """

    def __init__(self, path: str | Path, reference: str | None = None) -> None:
        self.path = str(path)
        self.format = RecordFormat.from_path(self.path)
        self.reference = reference
        self._headers: list[str] = []
        self._text: TextIO | None = None
        self._container: pysam.AlignmentFile | None = None
        self._closed = False
        if not self.format.is_container:
            try:
                if self.format is RecordFormat.SAM_GZ:
                    self._text = gzip.open(self.path, "wt", encoding="utf-8")
                else:
                    self._text = open(self.path, "w", encoding="utf-8")  # noqa: SIM115
            except OSError as err:
                msg = f"Unable to open '{self.path}' for writing: {err}"
                logger.error(msg)
                raise IOFailureError(msg) from err

    def __enter__(self) -> RecordSink:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, *exc_info: object) -> None:
        if exc_type is not None and self._container is None and self._text is None:
            # Aborted before any container was written; leave nothing behind
            self._closed = True
            return
        self.close()

    def _open_container(self) -> pysam.AlignmentFile:
        if self._container is None:
            text = "".join(f"{line}\n" for line in self._headers)
            try:
                self._container = open_alignment(
                    self.path,
                    self.format,
                    write=True,
                    header=pysam.AlignmentHeader.from_text(text),
                    reference=self.reference,
                )
            except (OSError, ValueError) as err:
                msg = f"Unable to open '{self.path}' for writing: {err}"
                logger.error(msg)
                raise IOFailureError(msg) from err
        return self._container

    def write_header(self, line: str) -> None:
        if self._text is not None:
            self._write_text(line)
            return
        if self._container is not None:
            msg = f"Header line after alignment records cannot be encoded into {self.format.name}: {line!r}"
            logger.error(msg)
            raise MalformedRecordError(msg)
        self._headers.append(line)

    def write_pair(self, pair: MatePair) -> None:
        if self._text is not None:
            self._write_text(pair.read1.line)
            self._write_text(pair.read2.line)
            return
        container = self._open_container()
        for record in pair:
            try:
                container.write(pysam.AlignedSegment.fromstring(record.line, container.header))
            except (OSError, ValueError) as err:
                msg = f"Failed encoding '{record.qname}' into '{self.path}': {err}"
                logger.error(msg)
                raise IOFailureError(msg) from err

    def _write_text(self, line: str) -> None:
        try:
            self._text.write(f"{line}\n")
        except OSError as err:
            msg = f"Failed writing '{self.path}': {err}"
            logger.error(msg)
            raise IOFailureError(msg) from err

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._text is not None:
            self._text.close()
            return
        self._open_container().close()


# ---------------------------- STREAM VALIDATORS ---------------------------- #


def decoder_diagnostics(path: str | Path, reference: str | None = None) -> list[str]:
    """
    Run the container decoder over the header of `path` and collect its
    diagnostics as bracketed severity lines ("[W::bam_hdr_read] EOF marker
    is absent ..."). Text SAM has no container framing and yields none.

    htslib prints some warnings straight to the process's stderr, where
    samtools' captured messages never see them, so the container is also
    opened strictly and an open failure is reported as an error line.
    """
    fmt = RecordFormat.from_path(path)
    if not fmt.is_container:
        return []
    try:
        pysam.view("-H", str(path), catch_stdout=True)
        messages = pysam.view.get_messages() or ""
    except pysam.SamtoolsError as err:
        messages = str(err)
    if isinstance(messages, bytes):
        messages = messages.decode(errors="replace")
    elif not isinstance(messages, str):
        messages = "\n".join(messages)
    diagnostics = HTSLIB_DIAGNOSTIC.findall(messages)

    try:
        open_alignment(str(path), fmt, write=False, reference=reference).close()
    except (OSError, ValueError) as err:
        diagnostics.append(f"[E::{fmt.name.lower()}_open] {err}")
    return diagnostics


def check_truncation(diagnostics: Iterable[str], source: str) -> None:
    """
    Fail if any of the first few decoder diagnostics is a bracketed severity
    line mentioning EOF or truncation.
    """
    for line in islice(diagnostics, DIAGNOSTIC_LINE_LIMIT):
        if line.startswith("[") and TRUNCATION_WORDS.search(line):
            msg = f"File '{source}' is truncated: {line.strip()}"
            logger.error(msg)
            raise StreamTruncatedError(msg)


def check_not_empty(lines: Iterable[str], source: str) -> None:
    if next(iter(lines), None) is None:
        msg = f"File '{source}' is empty"
        logger.error(msg)
        raise StreamEmptyError(msg)


def declares_position_sorted(line: str) -> bool:
    """True for an '@SO' header or an '@HD' header carrying SO:coordinate."""
    tag = line[:3]
    if tag == "@SO":
        return True
    return tag == "@HD" and "SO:coordinate" in line.split("\t")[1:]


def check_pair_order(lines: Iterable[str], source: str, limit: int = PAIR_SCAN_LIMIT) -> int:
    """
    Scan up to `limit` data-line pairs and require both lines of every pair to
    carry the same read name once '/1' and '/2' suffixes are stripped.
    Coordinate-sorted headers are rejected as well. Returns the number of
    pairs scanned.
    """
    assert limit > 0, f"Pair scan limit must be positive, got {limit}"

    scanned = 0
    pending: str | None = None
    for line in lines:
        if is_header_line(line):
            if declares_position_sorted(line):
                msg = (
                    f"File '{source}' is sorted by position ({line.strip()}); "
                    "mates must be adjacent, e.g. sorted by read name or unsorted aligner output"
                )
                logger.error(msg)
                raise StreamPositionSortedError(msg)
            continue

        qname = line.split("\t", 1)[0]
        if pending is None:
            pending = qname
            continue
        if strip_mate_suffix(pending) != strip_mate_suffix(qname):
            msg = (
                f"Reads are not mate-paired in '{source}': '{pending}' is followed by "
                f"'{qname}' (pair {scanned + 1}). The file is not correctly ordered."
            )
            logger.error(msg)
            raise MatePairMismatchError(msg)
        pending = None
        scanned += 1
        if scanned >= limit:
            break

    logger.debug(f"Pair-order scan of '{source}' checked {scanned} pairs")
    return scanned


def validate_input(
    path: str | Path,
    reference: str | None = None,
    pair_scan_limit: int = PAIR_SCAN_LIMIT,
) -> int:
    """
    Pre-flight checks, in order: truncation, emptiness, pair ordering. Each
    check opens its own handle and releases it before the next one starts.
    """
    source = str(path)
    check_truncation(decoder_diagnostics(source, reference), source)
    with open_record_source(source, reference) as lines:
        check_not_empty(lines, source)
    with open_record_source(source, reference) as lines:
        return check_pair_order(lines, source, pair_scan_limit)


# ------------------------------- CORE LOGIC -------------------------------- #


def iter_mate_pairs(lines: Iterable[str], on_header: Callable[[str], None]) -> Iterator[MatePair]:
    """
    Group consecutive data lines into mate pairs. Header lines are handed to
    `on_header` as they arrive and never paired.
    """
    read1: AlignmentRecord | None = None
    for line in lines:
        if is_header_line(line):
            on_header(line)
            continue
        record = AlignmentRecord.from_line(line)
        if read1 is None:
            read1 = record
            continue
        yield MatePair(read1, record)
        read1 = None

    if read1 is not None:
        msg = f"Odd number of alignment records: '{read1.qname}' has no mate"
        logger.error(msg)
        raise MalformedPairingError(msg)


class DedupEngine:
    """Decides emit-or-drop per pair against the context's seen-key set."""

    def __init__(self, context: DedupContext, prefix_length: int = KEY_PREFIX_LEN) -> None:
        assert prefix_length > 0, f"Key prefix length must be positive, got {prefix_length}"
        self.context = context
        self.prefix_length = prefix_length

    def process(self, pair: MatePair) -> Verdict:
        key = build_key(pair.read1.seq, pair.read2.seq, self.prefix_length)
        counters = self.context.counters
        counters.total += 1
        if key in self.context.seen:
            counters.removed += 1
            return Verdict.DROP
        self.context.seen.add(key)
        return Verdict.EMIT


def run_dedup(
    lines: Iterable[str],
    sink: RecordSink,
    context: DedupContext,
    prefix_length: int = KEY_PREFIX_LEN,
) -> RunCounters:
    """
    Stream pairs from `lines` through the engine, writing headers and first
    occurrences to `sink` in input order.
    """
    engine = DedupEngine(context, prefix_length)
    counters = context.counters
    for pair in iter_mate_pairs(lines, sink.write_header):
        if engine.process(pair) is Verdict.EMIT:
            sink.write_pair(pair)
        if counters.total % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: pairs={counters.total}, removed={counters.removed}, "
                f"unique_keys={len(context.seen)}",
            )

    assert counters.removed + counters.retained == counters.total, (
        f"Counter inconsistency: removed={counters.removed}, retained={counters.retained}, "
        f"total={counters.total}"
    )
    assert len(context.seen) == counters.retained, (
        f"Seen keys ({len(context.seen)}) must equal retained pairs ({counters.retained})"
    )
    return counters


def _input_stem(in_path: Path) -> str:
    fmt = RecordFormat.from_path(in_path)
    return in_path.name[: -len(fmt.value)]


def output_path_for(in_path: str | Path, config: DedupConfig) -> Path:
    in_path = Path(in_path)
    fmt = config.output_format or RecordFormat.from_path(in_path)
    directory = config.output_dir or in_path.parent
    return directory / f"{_input_stem(in_path)}.deduplicated{fmt.value}"


def report_path_for(in_path: str | Path, config: DedupConfig) -> Path:
    in_path = Path(in_path)
    directory = config.output_dir or in_path.parent
    return directory / f"{_input_stem(in_path)}.deduplication_report.txt"


def write_report(report: DedupReport, path: str | Path) -> None:
    try:
        Path(path).write_text(report.to_text(), encoding="utf-8")
    except OSError as err:
        msg = f"Failed writing report '{path}': {err}"
        logger.error(msg)
        raise IOFailureError(msg) from err


def deduplicate_file(
    in_path: str | Path,
    config: DedupConfig,
    mode: LibraryMode = LibraryMode.PAIRED_END,
) -> DedupReport:
    """
    Validate, deduplicate and report one input file.

    Phases: validation (no output exists yet) → open source and sink →
    stream pairs → finalize counters and write the report. Any DedupError
    aborts the file; whatever output was already written is not usable.
    """
    in_path = Path(in_path)
    if mode is not LibraryMode.PAIRED_END:
        msg = f"'{in_path}' is {mode.name}; only paired-end input can be deduplicated by sequence"
        logger.error(msg)
        raise UnsupportedLibraryModeError(msg)

    logger.info(f"Validating '{in_path}'")
    validate_input(in_path, config.reference, config.pair_scan_limit)

    out_path = output_path_for(in_path, config)
    report_path = report_path_for(in_path, config)
    context = DedupContext(source_path=in_path)
    logger.info(f"Deduplicating '{in_path}' -> '{out_path}'")
    sink_opened = False
    try:
        with open_record_source(in_path, config.reference) as lines:
            with RecordSink(out_path, config.reference) as sink:
                sink_opened = True
                run_dedup(lines, sink, context, config.prefix_length)
    except DedupError:
        # Only output this run started writing is removed
        if sink_opened:
            discard_output(out_path)
        raise

    report = DedupReport.from_counters(in_path.name, context.counters)
    write_report(report, report_path)
    logger.success(
        f"{report.file_name}: pairs={report.total_pairs} | "
        f"removed={report.removed_pairs} ({report.removed_pct}%) | "
        f"retained={report.retained_pairs} ({report.retained_pct}%)",
    )
    return report


# ------------------------------ BATCH DRIVER ------------------------------- #


def infer_library_mode(path: str | Path, reference: str | None = None) -> LibraryMode:
    """
    Guess paired- vs single-end from the file itself: an '@PG' command line
    with both '-1' and '-2' mate-file options means paired; otherwise the
    paired flag of the first record decides. Header-only files count as paired.
    """
    with open_record_source(path, reference) as lines:
        for line in lines:
            if is_header_line(line):
                if line.startswith("@PG"):
                    for tag in line.split("\t")[1:]:
                        if tag.startswith("CL:"):
                            tokens = tag[3:].split()
                            if "-1" in tokens and "-2" in tokens:
                                return LibraryMode.PAIRED_END
                continue
            flag = AlignmentRecord.from_line(line).flag
            return LibraryMode.PAIRED_END if flag & FLAG_PAIRED else LibraryMode.SINGLE_END
    return LibraryMode.PAIRED_END


def resolve_library_mode(choice: str, path: str | Path, reference: str | None = None) -> LibraryMode:
    match choice:
        case "paired":
            return LibraryMode.PAIRED_END
        case "single":
            return LibraryMode.SINGLE_END
        case "auto":
            mode = infer_library_mode(path, reference)
            logger.debug(f"Inferred {mode.name} for '{path}'")
            return mode
    msg = f"Unknown library mode: {choice}"
    raise ValueError(msg)


def discard_output(out_path: Path) -> None:
    """Remove the partial output of an aborted file."""
    if out_path.exists():
        logger.warning(f"Removing incomplete output '{out_path}'")
        out_path.unlink()


SUMMARY_COLUMNS = (
    "file_name",
    "total_pairs",
    "removed_pairs",
    "removed_pct",
    "retained_pairs",
    "retained_pct",
)


def write_summary(reports: Sequence[DedupReport], path: str | Path) -> pl.DataFrame:
    """Write one tab-separated row per successfully processed file."""
    rows = [asdict(report) for report in reports]
    summary = pl.DataFrame(
        {column: [row[column] for row in rows] for column in SUMMARY_COLUMNS},
        schema={
            "file_name": pl.Utf8,
            "total_pairs": pl.Int64,
            "removed_pairs": pl.Int64,
            "removed_pct": pl.Utf8,
            "retained_pairs": pl.Int64,
            "retained_pct": pl.Utf8,
        },
    )
    try:
        summary.write_csv(str(path), separator="\t")
    except OSError as err:
        msg = f"Failed writing summary '{path}': {err}"
        logger.error(msg)
        raise IOFailureError(msg) from err
    logger.info(f"Wrote summary of {summary.height} file(s) to '{path}'")
    return summary


# --------------------------------- CLI ------------------------------------- #


OUTPUT_FORMATS = {
    "same": None,
    "sam": RecordFormat.SAM,
    "sam.gz": RecordFormat.SAM_GZ,
    "bam": RecordFormat.BAM,
    "cram": RecordFormat.CRAM,
}


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Remove duplicate read pairs from paired-end SAM/BAM/CRAM files by sequence:\n"
            f"  key = first {KEY_PREFIX_LEN} bp of read 1 + first {KEY_PREFIX_LEN} bp of "
            "reverse-complemented read 2.\n"
            "Mates must be adjacent (aligner output order or name-sorted); coordinate-sorted\n"
            "input is rejected. Memory use grows with the number of unique pairs per file."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument(
        "inputs",
        nargs="+",
        help="Input SAM/SAM.gz/BAM/CRAM files, each deduplicated independently",
    )
    p.add_argument(
        "-o",
        "--output-dir",
        dest="output_dir",
        type=Path,
        default=None,
        help="Directory for deduplicated files and reports (default: next to each input)",
    )
    p.add_argument(
        "--output-format",
        choices=list(OUTPUT_FORMATS),
        default="same",
        help="Output format (default: same as input)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--summary",
        type=Path,
        default=None,
        help="Write a tab-separated summary of all processed files to this path",
    )

    # Library layout
    p.add_argument(
        "--mode",
        choices=["auto", "paired", "single"],
        default="auto",
        help="Library layout; 'auto' infers it from @PG headers or the first record's flag",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting sequence deduplication run.")

    config = DedupConfig(
        output_dir=args.output_dir,
        output_format=OUTPUT_FORMATS[args.output_format],
        reference=args.reference,
    )
    logger.debug(f"DedupConfig: {config}")
    if config.output_dir is not None:
        try:
            config.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            logger.error(f"Unable to create output directory '{config.output_dir}': {err}")
            sys.exit(1)

    reports: list[DedupReport] = []
    failed: list[str] = []
    for in_path in args.inputs:
        try:
            mode = resolve_library_mode(args.mode, in_path, config.reference)
            reports.append(deduplicate_file(in_path, config, mode))
        except DedupError as err:
            logger.error(f"Aborted '{in_path}': {err}")
            failed.append(in_path)

    if args.summary is not None:
        write_summary(reports, args.summary)

    if failed:
        logger.error(f"{len(failed)} of {len(args.inputs)} file(s) failed: {', '.join(failed)}")
        sys.exit(1)
    logger.info("Sequence deduplication run complete.")


if __name__ == "__main__":
    main()
