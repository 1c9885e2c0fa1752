# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for filter_clipped testing.

Provides a mock alignment record, an in-memory record sink, and SAM/BAM files
with a known set of clip profiles.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from filter_clipped import FilterConfig  # noqa: E402

READ_LENGTH = 100
REFERENCE_LENGTH = 1000


class MockAlignedSegment:
    """Mock AlignedSegment for unit testing without pysam I/O."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ACGT" * 25,
        cigartuples: list[tuple[int, int]] | None = None,
        reference_id: int = 0,
        reference_start: int = 0,
        is_unmapped: bool = False,
        is_reverse: bool = False,
        is_proper_pair: bool = False,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        self.cigartuples = cigartuples
        self.reference_id = reference_id
        self.reference_start = reference_start
        self.is_unmapped = is_unmapped
        self.is_reverse = is_reverse
        self.is_proper_pair = is_proper_pair
        self.query_length = len(query_sequence) if query_sequence else 0


class RecordSink:
    """Collects written records in place of a pysam.AlignmentFile writer."""

    def __init__(self) -> None:
        self.records: list[Any] = []

    def write(self, aln: Any) -> int:
        self.records.append(aln)
        return 0

    @property
    def names(self) -> list[str]:
        return [r.query_name for r in self.records]


# (name, CIGAR, pass under the default 0.1/0.1/0.1 thresholds)
CLIP_PROFILES: list[tuple[str, list[tuple[int, int]] | None, bool]] = [
    ("match_100", [(0, 100)], True),
    ("soft_5_5", [(4, 5), (0, 90), (4, 5)], True),
    ("soft_left_20", [(4, 20), (0, 80)], False),
    ("hard_left_10", [(5, 10), (0, 90)], True),
    ("soft_right_20", [(0, 80), (4, 20)], False),
    ("hard_soft_left_15", [(5, 5), (4, 10), (0, 85)], False),
    ("both_7_7", [(4, 7), (0, 86), (4, 7)], False),
    ("fully_soft", [(4, 100)], False),
    ("unmapped", None, True),
]


def create_sam_header() -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "test_reference", "LN": REFERENCE_LENGTH}],
        "PG": [{"ID": "test", "PN": "filter_clipped_test", "VN": "0.1.0"}],
    }


def make_read(
    header: pysam.AlignmentHeader,
    qname: str,
    cigar: list[tuple[int, int]] | None,
    ref_start: int,
) -> pysam.AlignedSegment:
    """Build a forward-strand read; the stored sequence excludes hard clips."""
    read = pysam.AlignedSegment(header)
    read.query_name = qname
    if cigar is None:
        stored = READ_LENGTH
        read.flag = 4
        read.reference_id = -1
        read.reference_start = -1
    else:
        stored = sum(length for op, length in cigar if op in {0, 1, 4, 7, 8})
        read.flag = 0
        read.reference_id = 0
        read.reference_start = ref_start
        read.cigartuples = cigar
        read.mapping_quality = 60
    read.query_sequence = ("ACGT" * READ_LENGTH)[:stored]
    read.query_qualities = [30] * stored
    return read


def write_alignment_file(
    path: Path,
    mode: str,
    profiles: list[tuple[str, list[tuple[int, int]] | None, bool]],
) -> Path:
    """Write one record per clip profile, in the given order."""
    with pysam.AlignmentFile(str(path), mode, header=create_sam_header()) as out:
        for i, (qname, cigar, _) in enumerate(profiles):
            out.write(make_read(out.header, qname, cigar, ref_start=10 * i))
    return path


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def default_config() -> FilterConfig:
    return FilterConfig()


@pytest.fixture
def clipped_sam_file(temp_dir: Path) -> Path:
    """SAM file holding every record of CLIP_PROFILES."""
    return write_alignment_file(temp_dir / "clipped.sam", "w", CLIP_PROFILES)


@pytest.fixture
def clipped_bam_file(temp_dir: Path) -> Path:
    """BAM file holding every record of CLIP_PROFILES."""
    return write_alignment_file(temp_dir / "clipped.bam", "wb", CLIP_PROFILES)


@pytest.fixture
def empty_sam_file(temp_dir: Path) -> Path:
    """Create an empty SAM file with header only."""
    return write_alignment_file(temp_dir / "empty.sam", "w", [])


@pytest.fixture
def mock_read() -> Callable[..., MockAlignedSegment]:
    """Factory for MockAlignedSegment records."""
    return MockAlignedSegment


@pytest.fixture
def record_sink() -> RecordSink:
    return RecordSink()


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
