#!/usr/bin/env python3
"""Upload a large file in parallel chunks, with the option to resume an interrupted upload.

Usage:
    SESSION_UPLOAD_TOKEN=secret python large_file_upload.py big.iso /backups/
    python large_file_upload.py big.iso /backups/big.iso --resume AAAAAAAAABc,8388608
"""

import argparse
import logging
import os
import sys
from datetime import datetime, timezone

from session_upload import (
    CommitInfo,
    HTTPSessionClient,
    SessionUploadError,
    UploadOpts,
    UploadResume,
    UploadSession,
)
from session_upload.client import ProgressHandler, resolve_destination


def human_number(n: float) -> str:
    """Format a number with a metric prefix, e.g. 1234567 -> "1.23 M"."""
    value = float(n)
    for prefix in ("", "k", "M", "G", "T", "P", "E"):
        if value < 1000 or prefix == "E":
            break
        value /= 1000
    if not prefix:
        return f"{int(n)} "
    return f"{value:.2f} {prefix}"


def iso8601(timestamp: float) -> str:
    """Format a POSIX timestamp the way the remote store expects it."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Progress(ProgressHandler):
    """Print progress to stderr."""

    def __init__(self, source_len: int, start_offset: int):
        self.source_len = source_len
        self.start_offset = start_offset

    def update(self, bytes_uploaded, instant_rate, overall_rate):
        percent = (self.start_offset + bytes_uploaded) / max(self.source_len, 1) * 100
        print(
            f"{percent:.1f}%: {human_number(bytes_uploaded)}Bytes uploaded, "
            f"{human_number(instant_rate)}Bytes per second, "
            f"{human_number(overall_rate)}Bytes per second average",
            file=sys.stderr,
        )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("source", help="Local file to upload")
    parser.add_argument("dest", help="Destination path or folder in the remote store")
    parser.add_argument(
        "--resume",
        metavar="SESSION,OFFSET",
        type=UploadResume.from_string,
        help="Resume an interrupted upload",
    )
    parser.add_argument(
        "--url", default="http://localhost:8080/2", help="Base URL of the remote store"
    )
    parser.add_argument("--parallelism", type=int, default=20, help="Chunks uploaded at once")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Run the upload."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    if not os.path.isfile(args.source):
        print(f"Source file {args.source!r} not found", file=sys.stderr)
        return 2

    client = HTTPSessionClient(args.url, access_token=os.environ.get("SESSION_UPLOAD_TOKEN"))

    try:
        dest = resolve_destination(client, args.dest, os.path.basename(args.source))
    except (FileExistsError, SessionUploadError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(f"source = {args.source!r}", file=sys.stderr)
    print(f"dest   = {dest!r}", file=sys.stderr)

    stat = os.stat(args.source)
    with open(args.source, "rb") as source:
        if args.resume:
            source.seek(args.resume.start_offset)
            session = UploadSession.resume(client, args.resume)
        else:
            try:
                session = UploadSession.new(client)
            except SessionUploadError as e:
                print(f"Failed to create upload session: {e}", file=sys.stderr)
                return 2

        start_offset = args.resume.start_offset if args.resume else 0
        opts = UploadOpts(
            parallelism=args.parallelism,
            progress_handler=Progress(stat.st_size, start_offset),
        )
        try:
            session.upload(source, opts)
            metadata = session.commit(
                CommitInfo(path=dest, client_modified=iso8601(stat.st_mtime))
            )
        except SessionUploadError as e:
            print(f"Error: {e}", file=sys.stderr)
            print(f"To resume, use --resume {session.get_resume()}", file=sys.stderr)
            return 2

    print(f"Upload succeeded: {metadata.path_display} ({metadata.content_hash})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
