# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the sequence deduplication tests.

Provides helpers for building SAM text records, writing them as SAM, SAM.gz
or BAM inputs, and reading alignment outputs back.
"""

import gzip
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

REFERENCE_LENGTH = 5000

HEADER_LINES = [
    "@HD\tVN:1.6\tSO:unsorted",
    f"@SQ\tSN:chr1\tLN:{REFERENCE_LENGTH}",
    "@PG\tID:bowtie2\tPN:bowtie2\tVN:2.5.1\tCL:bowtie2 -x genome -1 r1.fq.gz -2 r2.fq.gz",
]

SEQ_A1 = "ACGTACGTTGCAAGCTTGACCATGGATCCGAATTCGGTACCTCTAGAGTCGACCTGCAGGCATGC"
SEQ_A2 = "TTGGCCAAGGTTCCAAGGTTACCGGTTAACCGGTTAAGGCCTTAAGGCCTTAACCGGAATTCCGG"
SEQ_B1 = "GGGAAACCCTTTGGGAAACCCTTTGGGAAACCCTTTGGGAAACCCTTTGGGAAACCCTTTGGGAAA"
SEQ_B2 = "CATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCATGCA"
SEQ_C1 = "TTTTCCCCAAAAGGGGTTTTCCCCAAAAGGGGTTTTCCCCAAAAGGGGTTTTCCCCAAAAGGGGTT"
SEQ_C2 = "AGAGAGAGTCTCTCTCAGAGAGAGTCTCTCTCAGAGAGAGTCTCTCTCAGAGAGAGTCTCTCTCAG"


def sam_line(
    qname: str,
    seq: str,
    flag: int = 99,
    pos: int = 100,
    rname: str = "chr1",
    mate_pos: int = 300,
) -> str:
    """One SAM data line with a full-length match CIGAR and flat qualities."""
    return "\t".join(
        [
            qname,
            str(flag),
            rname,
            str(pos),
            "42",
            f"{len(seq)}M",
            "=",
            str(mate_pos),
            "0",
            seq,
            "I" * len(seq),
            "AS:i:0",
        ]
    )


def mate_pair_lines(
    name: str,
    seq1: str,
    seq2: str,
    pos: int = 100,
    suffixes: bool = False,
) -> list[str]:
    """Read 1 and read 2 lines for one fragment."""
    r1 = f"{name}/1" if suffixes else name
    r2 = f"{name}/2" if suffixes else name
    return [
        sam_line(r1, seq1, flag=99, pos=pos, mate_pos=pos + 200),
        sam_line(r2, seq2, flag=147, pos=pos + 200, mate_pos=pos),
    ]


def write_sam(path: Path, lines: list[str]) -> Path:
    opener = gzip.open if path.name.endswith(".gz") else open
    with opener(path, "wt", encoding="utf-8") as fh:
        for line in lines:
            fh.write(f"{line}\n")
    return path


def write_bam(path: Path, lines: list[str]) -> Path:
    headers = [line for line in lines if line.startswith("@")]
    records = [line for line in lines if not line.startswith("@")]
    header = pysam.AlignmentHeader.from_text("".join(f"{h}\n" for h in headers))
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for record in records:
            bam.write(pysam.AlignedSegment.fromstring(record, header))
    return path


def read_data_lines(path: Path) -> list[str]:
    """Data lines of a SAM/SAM.gz output, terminators removed."""
    opener = gzip.open if path.name.endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8") as fh:
        return [line.rstrip("\n") for line in fh if not line.startswith("@")]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def duplicated_pair_lines() -> list[str]:
    """
    Three fragments: A, B, then A again at another position (a sequence
    duplicate of the first pair).
    """
    return [
        *HEADER_LINES,
        *mate_pair_lines("frag_A", SEQ_A1, SEQ_A2, pos=100),
        *mate_pair_lines("frag_B", SEQ_B1, SEQ_B2, pos=1200),
        *mate_pair_lines("frag_A_dup", SEQ_A1, SEQ_A2, pos=2500),
    ]


@pytest.fixture
def duplicated_sam_file(temp_dir: Path, duplicated_pair_lines: list[str]) -> Path:
    return write_sam(temp_dir / "sample.sam", duplicated_pair_lines)


@pytest.fixture
def duplicated_bam_file(temp_dir: Path, duplicated_pair_lines: list[str]) -> Path:
    return write_bam(temp_dir / "sample.bam", duplicated_pair_lines)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
