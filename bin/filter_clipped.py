#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Remove alignments with a high number of clipped bases.

Some aligners use loose scoring and write alignments with long soft/hard-clipped
ends into SAM/BAM/CRAM files. This tool gates every alignment on the fraction of
its read sequence that was clipped: from the left (5', start of the CIGAR), from
the right (3', end of the CIGAR), and from both ends combined.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
SOFT_CLIP = 4
HARD_CLIP = 5
CLIP_OPS = {SOFT_CLIP, HARD_CLIP}
QRY_CONSUME = {0, 1, 4, 7, 8}

# Designation for stdin/stdout
PIPE = "-"

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class FilterConfig:
    """
    Clip-fraction thresholds and output behavior for one run.

    - both_end: max fraction of the read clipped from both ends combined
    - left_side: max fraction clipped from the 5' end (start of the CIGAR)
    - right_side: max fraction clipped from the 3' end (end of the CIGAR)
    - inverse: keep only the failing (high-clipped) alignments
    - unalign: write failing alignments as unmapped instead of dropping them;
      takes precedence over `inverse`
    """

    both_end: float = 0.1
    left_side: float = 0.1
    right_side: float = 0.1
    inverse: bool = False
    unalign: bool = False


class Verdict(Enum):
    """Outcome of gating one alignment against a FilterConfig."""

    PASS = auto()
    FAIL = auto()


@dataclass
class RunCounts:
    """Record tallies for one pass over an alignment stream."""

    total: int = 0
    passed: int = 0  # records written to the output
    unaligned: int = 0  # records written as unmapped (unalign mode only)


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
    # stdout may carry alignment records
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @property
    def is_clip(self) -> bool:
        return self.op in CLIP_OPS


class Cigar(list[CigarOp]):
    """A list of CigarOp with clip accounting helpers."""

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]] | None) -> Cigar:
        """
        Convert pysam's list[(op, len)] to a Cigar. A missing CIGAR (unmapped
        read) becomes an empty Cigar.
        """
        if cig_raw is None:
            return cls()
        return cls(CigarOp(op, ln) for op, ln in cig_raw)

    def leading_clipped(self) -> int:
        """Bases in the run of S/H operations at the start of the CIGAR."""
        clipped = 0
        for run in self:
            if not run.is_clip:
                break
            clipped += run.length
        return clipped

    def trailing_clipped(self) -> int:
        """Bases in the run of S/H operations at the end of the CIGAR."""
        clipped = 0
        for run in reversed(self):
            if not run.is_clip:
                break
            clipped += run.length
        return clipped

    def read_length(self) -> int:
        """Full read length implied by the CIGAR, hard-clipped bases included."""
        return sum(
            run.length for run in self if run.op in QRY_CONSUME or run.op == HARD_CLIP
        )


def full_read_length(aln: pysam.AlignedSegment, cig: Cigar | None = None) -> int:
    """
    Length of the read as sequenced, including bases removed by hard clipping.

    Mirrors `AlignedSegment.infer_read_length()`. Records without a CIGAR fall
    back to the stored sequence length.
    """
    if cig is None:
        cig = Cigar.from_pysam(aln.cigartuples)
    if cig:
        return cig.read_length()
    if aln.query_length:
        return aln.query_length
    seq = aln.query_sequence
    return len(seq) if seq else 0


def _fraction(n_base: int, seq_len: int) -> float:
    if seq_len <= 0:
        return 1.0
    return n_base / seq_len


@dataclass(frozen=True)
class ClipStat:
    """Clipped-base counts at each end of one alignment, and its read length."""

    left: int
    right: int
    seq_len: int

    @classmethod
    def from_cigar(cls, cig: Cigar, seq_len: int) -> ClipStat:
        return cls(
            left=cig.leading_clipped(),
            right=cig.trailing_clipped(),
            seq_len=seq_len,
        )

    @property
    def total_clipped(self) -> int:
        return self.left + self.right

    @property
    def left_fraction(self) -> float:
        return _fraction(self.left, self.seq_len)

    @property
    def right_fraction(self) -> float:
        return _fraction(self.right, self.seq_len)

    @property
    def total_fraction(self) -> float:
        return _fraction(self.total_clipped, self.seq_len)


def clip_stat_for(aln: pysam.AlignedSegment) -> ClipStat:
    """Compute the ClipStat of an alignment record."""
    cig = Cigar.from_pysam(aln.cigartuples)
    return ClipStat.from_cigar(cig, full_read_length(aln, cig))


# ------------------------------- THRESHOLDS -------------------------------- #


def evaluate(stat: ClipStat, config: FilterConfig) -> Verdict:
    """
    PASS when every clip fraction is at or below its threshold.

    A zero-length read has all fractions at 1.0 and fails unconditionally.
    """
    if stat.seq_len <= 0:
        return Verdict.FAIL
    if (
        stat.total_fraction <= config.both_end
        and stat.left_fraction <= config.left_side
        and stat.right_fraction <= config.right_side
    ):
        return Verdict.PASS
    return Verdict.FAIL


def unalign_in_place(aln: pysam.AlignedSegment) -> None:
    """Mark an alignment as unmapped, leaving sequence, qualities and tags intact."""
    aln.is_unmapped = True
    aln.is_reverse = False
    aln.is_proper_pair = False
    aln.reference_id = -1
    aln.reference_start = -1


# ----------------------------- I/O UTILITIES ------------------------------- #

_WRITE_MODES = {"sam": "w", "bam": "wb", "cram": "wc"}
_READ_MODES = {"sam": "r", "bam": "rb", "cram": "rc"}


def _io_mode(path: str, write: bool, fmt: str | None = None) -> str:  # noqa: FBT001
    """
    Determine pysam open mode from an explicit format or the filename extension.

    Pipes and inputs without a known extension read with plain "r" (htslib
    detects SAM/BAM/CRAM). Pipes write BAM unless a format is given.
    """
    modes = _WRITE_MODES if write else _READ_MODES
    if fmt is not None:
        if fmt not in modes:
            msg = f"Unknown alignment format '{fmt}': expected one of {sorted(modes)}"
            logger.error(msg)
            raise ValueError(msg)
        return modes[fmt]
    if path == PIPE:
        return "wb" if write else "r"
    ext = path.lower().rsplit(".", 1)[-1]
    if ext in modes:
        return modes[ext]
    if not write:
        return "r"
    msg = "Output must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template: pysam.AlignmentFile | None = None,
    fmt: str | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM (or "-" for stdin/stdout) with the correct mode.

    Writers copy the header of `template` untouched. For CRAM, pass a reference
    filename.
    """
    mode = _io_mode(path, write, fmt)

    kwargs = {}
    if reference is not None:
        kwargs["reference_filename"] = reference
    elif mode.endswith("c"):
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if template is None:
            msg = f"Writing to '{path}' requires a template AlignmentFile"
            logger.error(msg)
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, template=template, **kwargs)
    return pysam.AlignmentFile(path, mode, **kwargs)


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    config: FilterConfig,
) -> RunCounts:
    """
    Stream input -> output in document order, gating each record on clipping.

    - Normal mode: write records that PASS (or only those that FAIL when
      `config.inverse` is set).
    - Unalign mode: write every record; FAIL records are marked unmapped first.

    Records are otherwise written unchanged.
    """
    counts = RunCounts()
    if config.unalign and config.inverse:
        logger.warning("Unalign mode ignores --inverse: every record is written.")

    for aln in inp:
        counts.total += 1
        stat = clip_stat_for(aln)
        verdict = evaluate(stat, config)
        logger.trace("{}: {} -> {}", aln.query_name, stat, verdict.name)

        if config.unalign:
            if verdict is Verdict.FAIL:
                unalign_in_place(aln)
                counts.unaligned += 1
            outp.write(aln)
            counts.passed += 1
        elif (verdict is Verdict.PASS) != config.inverse:
            outp.write(aln)
            counts.passed += 1

        if counts.total % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: read={counts.total}, written={counts.passed}, "
                f"unaligned={counts.unaligned}",
            )

    logger.info(
        f"Read {counts.total} alignments; Written {counts.passed} alignments; "
        f"Made {counts.unaligned} unaligned",
    )
    return counts


# --------------------------------- CLI ------------------------------------- #


def check_fraction(val: str) -> float:
    """argparse type: a float between 0 and 1 inclusive."""
    try:
        f_val = float(val)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    if not 0.0 <= f_val <= 1.0:
        msg = f"{val} is not within 0 and 1"
        raise argparse.ArgumentTypeError(msg)
    return f_val


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog="filter-clipped",
        description=(
            "Remove alignments with a high number of clipped bases.\n"
            "Aligners with loose scoring can write alignments with long soft/hard-clipped\n"
            "ends. Alignments are gated on the number of clipped bases relative to the\n"
            "read sequence length (hard-clipped bases included)."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument(
        "-i",
        "--in-bam",
        dest="in_path",
        required=True,
        help='Input SAM/BAM/CRAM ("-" for stdin)',
    )
    p.add_argument(
        "-o",
        "--out-bam",
        dest="out_path",
        default=PIPE,
        help='Output SAM/BAM/CRAM ("-" for stdout, default)',
    )
    p.add_argument(
        "--output-format",
        choices=sorted(_WRITE_MODES),
        default=None,
        help="Output format (default: from the output extension, BAM for stdout)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Thresholds
    thresholds = p.add_argument_group("Thresholds")
    thresholds.add_argument(
        "-l",
        "--left-side",
        type=check_fraction,
        default=0.1,
        help="Maximum fraction of the read clipped from the left side (5' end)",
    )
    thresholds.add_argument(
        "-r",
        "--right-side",
        type=check_fraction,
        default=0.1,
        help="Maximum fraction of the read clipped from the right side (3' end)",
    )
    thresholds.add_argument(
        "-b",
        "--both-end",
        type=check_fraction,
        default=0.1,
        help="Maximum fraction of the read clipped from both ends combined",
    )

    # Selection
    p.add_argument(
        "--inverse",
        action="store_true",
        help="Keep only the failed (high-clipped-fraction) alignments",
    )
    p.add_argument(
        "-u",
        "--unalign",
        action="store_true",
        help="Mark failed alignments as unmapped instead of removing them (ignores --inverse)",
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

    config = FilterConfig(
        both_end=args.both_end,
        left_side=args.left_side,
        right_side=args.right_side,
        inverse=bool(args.inverse),
        unalign=bool(args.unalign),
    )
    logger.info(f"Reading from alignment file: {args.in_path}")
    logger.info(f"Writing to alignment file: {args.out_path}")
    logger.info(
        f"Thresholds: trailing clipped: {config.right_side}, "
        f"leading clipped: {config.left_side}, total clipped: {config.both_end}",
    )
    logger.debug(f"FilterConfig: {config}")

    try:
        input_alignment = open_alignment(
            args.in_path,
            write=False,
            reference=args.reference,
        )
        try:
            output_alignment = open_alignment(
                args.out_path,
                write=True,
                template=input_alignment,
                fmt=args.output_format,
                reference=args.reference,
            )
        except (OSError, ValueError):
            input_alignment.close()
            raise

        try:
            counts = process_stream(input_alignment, output_alignment, config)
        finally:
            output_alignment.close()
            input_alignment.close()
    except (OSError, ValueError) as e:
        logger.error(f"Clipped-alignment filtering failed: {e}")
        sys.exit(1)

    logger.success(
        f"Read: {counts.total} | Written: {counts.passed} | Unaligned: {counts.unaligned}",
    )


if __name__ == "__main__":
    main()
