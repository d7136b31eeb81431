#!/usr/bin/env python3
"""
Per-record nucleotide composition for large FASTA files.

The input file is memory-mapped once and processed in two parallel phases:

  1. Boundary scan: the mapped bytes are split into one contiguous range per
     worker, every '>' offset is collected into a shared list, then the
     end-of-file sentinel is appended and the list is sorted.
  2. Counting: consecutive boundaries delimit records. Records are dispatched
     in waves of at most `threads` units; each unit tallies G, C, A, T and N
     over the record body and appends a formatted block to the output.

Blocks are written in completion order, not file order.

Usage:
    nucleotide-counter <FASTA_FILE> <NUM_THREADS> [-o out.txt] [--table stats.tsv]
"""

import argparse
import concurrent.futures
import errno
import logging
import os
import sys
import threading
import time
from collections import namedtuple
from dataclasses import dataclass

import pandas as pd
from rich.logging import RichHandler
from tqdm import tqdm

from fasta_mmap import MappedFasta

logger = logging.getLogger(__name__)

HEADER_MARKER = b'>'
LINE_BREAK = b'\n'
SYMBOLS = ('G', 'C', 'A', 'T', 'N')
TALLY_WINDOW = 1 << 20
SEPARATOR = '-' * 35
DEFAULT_OUTPUT = 'out.txt'
LOGLEVEL_ENV = 'NUCLEOTIDE_COUNTER_LOGLEVEL'

Record = namedtuple('Record', ['offset', 'header', 'body_start', 'body_end'])


@dataclass
class SymbolCounts:
    g: int = 0
    c: int = 0
    a: int = 0
    t: int = 0
    n: int = 0

    @property
    def total(self):
        return self.g + self.c + self.a + self.t + self.n

    def as_dict(self):
        return {'G': self.g, 'C': self.c, 'A': self.a, 'T': self.t, 'N': self.n, 'Total': self.total}


# ================== Symbol Tally ==================

def tally_symbols(mapped, start, end):
    """
    Count G, C, A, T and N bytes in mapped[start:end].

    Anything else (line breaks, lowercase, IUPAC codes) is ignored. The range
    is read in fixed-size windows so memory use does not grow with the record.

    Args:
        mapped (MappedFasta): Mapped input file.
        start (int): First offset of the range.
        end (int): Offset one past the last byte of the range.

    Returns:
        SymbolCounts: Counts for the range.
    """
    if not 0 <= start <= end <= len(mapped):
        raise IndexError(f"tally range [{start}, {end}) outside mapped file of size {len(mapped)}")
    counts = SymbolCounts()
    for pos in range(start, end, TALLY_WINDOW):
        window = mapped.read(pos, min(pos + TALLY_WINDOW, end))
        counts.g += window.count(b'G')
        counts.c += window.count(b'C')
        counts.a += window.count(b'A')
        counts.t += window.count(b'T')
        counts.n += window.count(b'N')
    return counts


# ================== Record Boundary Scanner ==================

def _check_workers(workers):
    if workers < 1:
        raise ValueError(f"worker count must be at least 1, got {workers}")


def _scan_chunk(mapped, start, end, boundaries, lock):
    pos = mapped.find(HEADER_MARKER, start, end)
    while pos != -1:
        with lock:
            boundaries.append(pos)
        pos = mapped.find(HEADER_MARKER, pos + 1, end)


def find_boundaries(mapped, workers):
    """
    Locate every header marker in the mapped file.

    The file is split into `workers` disjoint ranges of ceil(size / workers)
    bytes, scanned concurrently. Offsets land in one shared list in whatever
    order the threads find them, so the list is sorted once all threads join.

    Args:
        mapped (MappedFasta): Mapped input file.
        workers (int): Number of scanning threads.

    Returns:
        list: Ascending marker offsets followed by the file size sentinel.
    """
    _check_workers(workers)
    size = len(mapped)
    boundaries = []
    lock = threading.Lock()

    if size:
        chunk_size = -(-size // workers)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = []
            for start in range(0, size, chunk_size):
                end = min(start + chunk_size, size)
                futures.append(executor.submit(_scan_chunk, mapped, start, end, boundaries, lock))
            for future in concurrent.futures.as_completed(futures):
                future.result()

    boundaries.append(size)
    boundaries.sort()
    return boundaries


# ================== Result Sink ==================

def format_stats(header, counts):
    """Render one record's counts as a self-delimited text block."""
    lines = ['', header, '']
    lines.extend(f"{symbol}: {value}" for symbol, value in zip(SYMBOLS, (counts.g, counts.c, counts.a, counts.t, counts.n)))
    lines.append(SEPARATOR)
    lines.append(f"Total: {counts.total}")
    return '\n'.join(lines) + '\n'


class ResultSink:
    """
    Shared output for counting workers.

    Each block is formatted outside the lock and written under it, so blocks
    from different records never interleave. When `keep_rows` is set the
    sink also remembers every result for the tabular summary.
    """

    def __init__(self, handle, keep_rows=False):
        self._handle = handle
        self._lock = threading.Lock()
        self.rows = [] if keep_rows else None

    def write(self, record, counts):
        block = format_stats(record.header, counts)
        with self._lock:
            self._handle.write(block)
            if self.rows is not None:
                self.rows.append((record.offset, record.header, counts))

    def to_frame(self):
        """Remembered results as a DataFrame in file order."""
        columns = ['offset', 'header', *SYMBOLS, 'Total']
        data = [{'offset': offset, 'header': header, **counts.as_dict()}
                for offset, header, counts in (self.rows or [])]
        frame = pd.DataFrame(data, columns=columns)
        return frame.sort_values('offset', kind='stable').reset_index(drop=True)


# ================== Record Dispatcher ==================

def describe_record(mapped, start, stop):
    """
    Split the record spanning [start, stop) into header text and body range.

    The header runs from the marker up to the first line break; when the
    record has no line break the whole span is header and the body is empty.
    """
    newline = mapped.find(LINE_BREAK, start, stop)
    header_end = stop if newline == -1 else newline
    header = mapped.read(start, header_end).decode('utf-8', errors='replace')
    return Record(start, header, header_end, stop)


def _count_record(mapped, record, sink):
    counts = tally_symbols(mapped, record.body_start, record.body_end)
    sink.write(record, counts)
    return counts


def dispatch_records(mapped, boundaries, workers, sink, progress=False):
    """
    Count every record delimited by `boundaries`, at most `workers` at a time.

    Records go out in waves; each wave is joined before the next is
    submitted, which caps in-flight work regardless of record count.

    Args:
        mapped (MappedFasta): Mapped input file.
        boundaries (list): Sorted boundary offsets ending with the file size.
        workers (int): Maximum number of records counted concurrently.
        sink (ResultSink): Destination for formatted results.
        progress (bool): Show a tqdm progress bar over records.

    Returns:
        int: Number of records processed.
    """
    _check_workers(workers)
    n_records = max(len(boundaries) - 1, 0)
    if n_records == 0:
        return 0

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor, \
            tqdm(total=n_records, desc="Counting nucleotides", unit="rec", disable=not progress) as pbar:
        for first in range(0, n_records, workers):
            wave = [describe_record(mapped, boundaries[i], boundaries[i + 1])
                    for i in range(first, min(first + workers, n_records))]
            futures = [executor.submit(_count_record, mapped, record, sink) for record in wave]
            done, _ = concurrent.futures.wait(futures)
            for future in done:
                future.result()
            pbar.update(len(wave))
    return n_records


# ================== Pipeline ==================

def write_table(sink, table_path):
    try:
        sink.to_frame().to_csv(table_path, sep='\t', index=False)
    except OSError as e:
        logger.error("Failed to write summary table '%s': %s", table_path, e)
        raise
    logger.info("Summary table written to '%s'", table_path)


def count_fasta(fasta_file, workers, output=DEFAULT_OUTPUT, table=None, progress=False):
    """
    Run both phases over `fasta_file` and write results to `output`.

    The output file is created only after the input has been mapped, so an
    unreadable input leaves no output behind. An output path naming the
    input file itself is refused before anything is truncated.

    Returns:
        int: Number of records processed.
    """
    _check_workers(workers)
    with MappedFasta(fasta_file) as mapped:
        logger.info("Pre-processing...")
        boundaries = find_boundaries(mapped, workers)
        logger.info("Done pre-processing... %d record(s) found", len(boundaries) - 1)

        if os.path.exists(output) and os.path.samefile(fasta_file, output):
            logger.error("Output file '%s' is the input file", output)
            raise OSError(errno.EINVAL, "output file would overwrite the input file", output)

        with open(output, 'w', encoding='utf-8') as out:
            sink = ResultSink(out, keep_rows=table is not None)
            logger.info("Counting nucleotides...")
            n_records = dispatch_records(mapped, boundaries, workers, sink, progress=progress)
            logger.info("Done counting nucleotides...")

    if table is not None:
        write_table(sink, table)
    return n_records


# ================== Command line ==================

class _UTCFormatter(logging.Formatter):
    """Logging formatter with ISO-8601 UTC timestamps."""
    converter = time.gmtime

    def formatTime(self, record, datefmt=None):
        return time.strftime("%Y-%m-%dT%H:%M:%SZ", self.converter(record.created))


def setup_logging(level='INFO'):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[RichHandler(rich_tracebacks=True, markup=False, show_level=False, show_time=False, show_path=False)],
        force=True,
    )
    formatter = _UTCFormatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")
    for handler in logging.getLogger().handlers:
        handler.setFormatter(formatter)


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors on stderr and exits cleanly."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(0, f"{self.prog}: error: {message}\n")


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid thread count: '{value}'") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"thread count must be a positive integer, got {number}")
    return number


def build_parser():
    parser = UsageParser(
        prog='nucleotide-counter',
        description='Count G, C, A, T and N per record of a FASTA file using a memory map and a thread pool.',
    )
    parser.add_argument('fasta_file', help='Path to the FASTA file')
    parser.add_argument('threads', type=positive_int, help='Number of worker threads')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT, help=f'Output file (default: {DEFAULT_OUTPUT})')
    parser.add_argument('--table', default=None, help='Optional tab-separated summary, one row per record in file order')
    parser.add_argument('--log-level', type=str.upper, default=os.getenv(LOGLEVEL_ENV, 'INFO'),
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help=f'Logging level (default: ${LOGLEVEL_ENV} or INFO)')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        n_records = count_fasta(args.fasta_file, args.threads, output=args.output,
                                table=args.table, progress=not args.no_progress)
    except OSError as e:
        parser.print_usage(sys.stderr)
        print("Something went wrong...", file=sys.stderr)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    logger.info("Processed %d record(s)", n_records)
    logger.info("Output is stored in file named %s", args.output)


if __name__ == "__main__":
    main()
