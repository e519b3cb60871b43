#!/usr/bin/env python3
"""
sdat2img - Rebuilds a raw image from an Android sparse data transfer pair

This tool reads a transfer list (system.transfer.list) and the matching data
file (system.new.dat) and writes the raw filesystem image they describe.
"""

import argparse
import sys
from pathlib import Path
from typing import NamedTuple, Optional
import mmh3
import hashlib
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
import re


BLOCK_SIZE = 4096

KNOWN_COMMANDS = ('new', 'erase', 'zero')

INTEGER_PATTERN = re.compile(r'-?[0-9]+')

ANDROID_VERSIONS = {
    1: 'Android Lollipop 5.0',
    2: 'Android Lollipop 5.1',
    3: 'Android Marshmallow 6.x',
    4: 'Android Nougat 7.x / Oreo 8.x',
}


class FormatError(ValueError):
    """The transfer list is malformed."""


class StructuralError(ValueError):
    """An input path is a directory instead of a file."""


class TruncatedDataError(IOError):
    """The data file ended before every new block was copied."""


class BlockRange(NamedTuple):
    """A range of blocks, end exclusive."""
    start: int
    end: int

    @property
    def block_count(self) -> int:
        return self.end - self.start


class BlockCommand(NamedTuple):
    """A transfer list command and the block ranges it applies to."""
    command: str
    ranges: tuple[BlockRange, ...]

    @property
    def block_count(self) -> int:
        return sum(r.block_count for r in self.ranges)


class TransferList(NamedTuple):
    """Parsed contents of a transfer list."""
    version: int
    new_blocks: int  # Declared in the header, informational only
    commands: tuple[BlockCommand, ...]


class ReconstructionResult(NamedTuple):
    """Summary of a reconstruction run."""
    blocks_written: int
    ranges_written: int
    commands_skipped: int
    image_size: int
    short_read: bool


class ImageInfo(NamedTuple):
    """Information about the reconstructed image file."""
    size: int
    blocks: int
    distinct_hashes: int  # Distinct 32-bit block hashes, collisions undercount
    md5: str
    sha256: str


def _parse_int(text: str) -> int:
    """Convert a plain ASCII decimal integer, optionally negative."""
    if not INTEGER_PATTERN.fullmatch(text):
        raise ValueError(f"Not an integer: {text!r}")
    return int(text)


def describe_version(version: int) -> str:
    """Return the Android release a transfer list version belongs to."""
    return ANDROID_VERSIONS.get(version, 'Unknown Android version')


def parse_rangeset(text: str) -> list[BlockRange]:
    """
    Parse a range-spec into a list of block ranges.

    A range-spec is a comma-separated list of integers where the first value
    is the number of values that follow. The following values are consumed
    in pairs, each pair forming one range. A leading count of pairs instead
    of values is accepted too; both readings only agree for an empty list.

    Args:
        text: The raw range-spec, e.g. "4,0,3,10,11"

    Returns:
        List of BlockRange in declaration order

    Raises:
        FormatError: If a value is not an integer, the count does not match
                     the number of values, or a range ends before it starts

    Examples:
        >>> parse_rangeset("2,10,20")
        [BlockRange(start=10, end=20)]
        >>> parse_rangeset("2,10,20,30,40")
        [BlockRange(start=10, end=20), BlockRange(start=30, end=40)]
    """
    try:
        values = [_parse_int(value) for value in text.split(',')]
    except ValueError:
        raise FormatError(f"Error on parsing following data to rangeset:\n{text}") from None

    if len(values) not in (values[0] + 1, 2 * values[0] + 1):
        raise FormatError(f"Error on parsing following data to rangeset:\n{text}")

    ranges = []
    # A trailing unpaired value can only come from an odd count and is ignored
    for i in range(1, len(values) - 1, 2):
        start, end = values[i], values[i + 1]
        if start < 0 or end < start:
            raise FormatError(f"Invalid block range {start}-{end} in rangeset:\n{text}")
        ranges.append(BlockRange(start, end))
    return ranges


def _read_header_int(stream, name: str) -> int:
    line = stream.readline()
    if not line:
        raise FormatError(f"Transfer list ended before the {name} line")
    try:
        return _parse_int(line.strip())
    except ValueError:
        raise FormatError(f"Invalid {name} in transfer list: {line.strip()!r}") from None


def parse_transfer_list(stream) -> TransferList:
    """
    Parse a transfer list.

    Args:
        stream: Text stream positioned at the start of the transfer list

    Returns:
        TransferList with the version, declared new block count and commands

    Raises:
        FormatError: If the transfer list is malformed or is not text
    """
    try:
        return _parse_transfer_list(stream)
    except UnicodeDecodeError as e:
        raise FormatError(f"Transfer list is not a text file: {e}") from None


def _parse_transfer_list(stream) -> TransferList:
    version = _read_header_int(stream, 'version')
    new_blocks = _read_header_int(stream, 'new block count')

    if version >= 2:
        # Stash entry count and maximum stash size, not needed here
        for name in ('stash entry count', 'stash size'):
            if not stream.readline():
                raise FormatError(f"Transfer list ended before the {name} line")

    commands = []
    for line in stream:
        tokens = line.split()
        if not tokens:
            continue

        command = tokens[0]
        if command[0].isdigit():
            raise FormatError(f"Command '{command}' is not valid.")
        if len(tokens) < 2:
            raise FormatError(f"Command '{command}' has no block ranges")

        commands.append(BlockCommand(command, tuple(parse_rangeset(tokens[1]))))

    return TransferList(version, new_blocks, tuple(commands))


def max_extent(ranges) -> int:
    """Return the byte offset of the furthest block referenced by any range."""
    extent = 0
    for block_range in ranges:
        extent = max(extent, block_range.start, block_range.end)
    return extent * BLOCK_SIZE


class DataLayout:
    """Block accounting for the data file.

    The data file is the concatenation of every new range in transfer list
    order, so its expected size follows from the ranges alone.
    """

    def __init__(self, ranges: list[BlockRange]):
        self.ranges = list(ranges)
        self.total_blocks = sum(r.block_count for r in self.ranges)
        self.size = self.total_blocks * BLOCK_SIZE

    @classmethod
    def from_transfer_list(cls, transfer_list: TransferList) -> 'DataLayout':
        return cls([r for command in transfer_list.commands if command.command == 'new'
                    for r in command.ranges])


class ImageReconstructor:
    """Writes the blocks of new commands into an output image."""

    def __init__(self, transfer_list: TransferList, source, sink,
                 allow_short_read: bool = False, verbose: bool = False):
        """
        Initialize the reconstructor.

        Args:
            transfer_list: Parsed transfer list
            source: Binary stream of the data file, positioned at its start
            sink: Writable, seekable binary stream for the output image
            allow_short_read: Write whatever is left when the data file runs
                              out instead of raising TruncatedDataError (default: False)
            verbose: Whether to print timestamped progress messages to stderr (default: False)
        """
        self.transfer_list = transfer_list
        self.source = source
        self.sink = sink
        self.allow_short_read = allow_short_read
        self.verbose = verbose
        self.layout = DataLayout.from_transfer_list(transfer_list)

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp}] {message}", file=sys.stderr)

    @property
    def declared_blocks_match(self) -> bool:
        """Whether the header's new block count equals the blocks of all new commands."""
        return self.transfer_list.new_blocks == self.layout.total_blocks

    def reconstruct(self) -> ReconstructionResult:
        """
        Copy every new range from the data file into the image.

        Returns:
            ReconstructionResult describing the run

        Raises:
            TruncatedDataError: If the data file is too short and short reads
                                are not allowed
        """
        all_ranges = [r for command in self.transfer_list.commands for r in command.ranges]
        image_extent = max_extent(all_ranges)

        if not self.declared_blocks_match:
            self._log(f"Transfer list declares {self.transfer_list.new_blocks} new blocks, "
                      f"new commands cover {self.layout.total_blocks}")

        blocks_written = 0
        ranges_written = 0
        commands_skipped = 0
        short_read = False
        data_offset = 0  # Bytes consumed from the data file

        for command in self.transfer_list.commands:
            if command.command != 'new':
                if command.command in KNOWN_COMMANDS:
                    self._log(f"Skipping command {command.command}...")
                else:
                    self._log(f"Skipping unsupported command {command.command}...")
                commands_skipped += 1
                continue

            for block_range in command.ranges:
                self._log(f"Copying {block_range.block_count} blocks into position {block_range.start}...")
                self.sink.seek(block_range.start * BLOCK_SIZE)

                for block in range(block_range.start, block_range.end):
                    data = self.source.read(BLOCK_SIZE)
                    data_offset += len(data)
                    if len(data) < BLOCK_SIZE:
                        if not self.allow_short_read:
                            raise TruncatedDataError(
                                f"Unexpected end of data file at offset {data_offset} "
                                f"while copying block {block}")
                        self._log(f"Data file ended at block {block}, wrote {len(data)} remaining bytes")
                        self.sink.write(data)
                        short_read = True
                        break
                    self.sink.write(data)
                    blocks_written += 1

                ranges_written += 1
                if short_read:
                    break
            if short_read:
                break

        position = self.sink.tell()
        if position < image_extent:
            self._log(f"Extending image from {position} to {image_extent} bytes")
            self.sink.truncate(image_extent)

        return ReconstructionResult(
            blocks_written=blocks_written,
            ranges_written=ranges_written,
            commands_skipped=commands_skipped,
            image_size=max(position, image_extent),
            short_read=short_read
        )


def _generate_block_hashes(image_file: Path) -> list[int]:
    """Generate murmur hashes for each block in a file."""
    hashes = []
    with open(image_file, 'rb') as f:
        while True:
            block = f.read(BLOCK_SIZE)
            if not block:
                break
            hashes.append(mmh3.hash(block, signed=False))
    return hashes


def describe_image(image_file: Path, capture_md5: bool = True, capture_sha256: bool = True) -> ImageInfo:
    """
    Gather size, block statistics and digests of an image file.

    The digests and block hashes are computed in parallel threads;
    hashlib.file_digest() releases the GIL while hashing. The distinct count
    is taken over 32-bit MurmurHash3 values, so it is approximate: colliding
    blocks are counted once.

    Args:
        image_file: Path to the image file
        capture_md5: Whether to calculate the MD5 hash (default: True)
        capture_sha256: Whether to calculate the SHA256 hash (default: True)

    Returns:
        ImageInfo for the file; skipped digests are empty strings
    """
    def file_digest(algorithm: str) -> str:
        with open(image_file, 'rb') as f:
            return hashlib.file_digest(f, algorithm).hexdigest()

    with ThreadPoolExecutor(max_workers=3) as executor:
        block_hashes = executor.submit(_generate_block_hashes, image_file)
        md5 = executor.submit(file_digest, 'md5') if capture_md5 else None
        sha256 = executor.submit(file_digest, 'sha256') if capture_sha256 else None

        hashes = block_hashes.result()
        return ImageInfo(
            size=image_file.stat().st_size,
            blocks=len(hashes),
            distinct_hashes=len(set(hashes)),
            md5=md5.result() if md5 else "",
            sha256=sha256.result() if sha256 else ""
        )


def _check_input(parser: argparse.ArgumentParser, path: Path, name: str):
    if not path.exists():
        parser.error(f"{name} does not exist: {path}")
    if path.is_dir():
        raise StructuralError(f"{name} is not a file but a directory: {path}")


def main(argv: Optional[list[str]] = None):
    """Main entry point for sdat2img."""
    parser = argparse.ArgumentParser(
        description='Rebuild a raw image from an Android transfer list and new.dat file',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Rebuild the system partition
  %(prog)s system.transfer.list system.new.dat system.img

  # Show progress and print digests of the result
  %(prog)s -v --info system.transfer.list system.new.dat system.img
        """
    )

    parser.add_argument(
        'transfer_list',
        type=Path,
        help='Path to the transfer list (system.transfer.list)'
    )

    parser.add_argument(
        'new_dat',
        type=Path,
        help='Path to the data file (system.new.dat)'
    )

    parser.add_argument(
        'output',
        type=Path,
        help='Path of the image file to write (system.img)'
    )

    parser.add_argument(
        '--allow-short-read',
        action='store_true',
        help='Write what is left if the data file is shorter than the transfer list requires'
    )

    parser.add_argument(
        '--info',
        action='store_true',
        help='Print size, block statistics and digests of the rebuilt image'
    )

    parser.add_argument(
        '--no-md5',
        action='store_true',
        help='Skip calculating MD5 hash for --info'
    )

    parser.add_argument(
        '--no-sha256',
        action='store_true',
        help='Skip calculating SHA256 hash for --info'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped progress messages to stderr'
    )

    args = parser.parse_args(argv)

    try:
        _check_input(parser, args.transfer_list, 'Transfer list')
        _check_input(parser, args.new_dat, 'Data file')

        with open(args.transfer_list, 'r', encoding='ascii') as flist:
            transfer_list = parse_transfer_list(flist)

        print(f"{describe_version(transfer_list.version)} detected!")

        with open(args.new_dat, 'rb') as fdat, open(args.output, 'wb') as fout:
            reconstructor = ImageReconstructor(
                transfer_list, fdat, fout,
                allow_short_read=args.allow_short_read,
                verbose=args.verbose
            )
            if not reconstructor.declared_blocks_match:
                print(f"Warning: transfer list declares {transfer_list.new_blocks} new blocks "
                      f"but new commands cover {reconstructor.layout.total_blocks}", file=sys.stderr)
            result = reconstructor.reconstruct()

        if result.short_read:
            print("Warning: data file ended early, image is incomplete", file=sys.stderr)

        print(f"Done! Output image: {args.output.resolve()}")

        if args.info:
            info = describe_image(args.output, capture_md5=not args.no_md5,
                                  capture_sha256=not args.no_sha256)
            print(f"Size: {info.size} bytes")
            print(f"Blocks: {info.blocks} ({info.distinct_hashes} distinct hashes)")
            if info.md5:
                print(f"MD5: {info.md5}")
            if info.sha256:
                print(f"SHA256: {info.sha256}")

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except (FormatError, StructuralError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
