"""Command-line converter: python -m fileconv.client FILE --to webp --category image"""
import argparse
import sys
from pathlib import Path

from fileconv.client.polling import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_MS, SubmissionError, TaskProgress, convert_file


def _print_progress(update: TaskProgress) -> None:
    if update.status == "pending":
        print(f"  {update.progress or 0:3d}%  {update.message or ''}", file=sys.stderr)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Convert a file through the converter task queue")
    parser.add_argument("file", type=Path, help="File to convert")
    parser.add_argument("--to", required=True, help="Target format (png, jpeg, webp, avif, tiff, pdf, svg)")
    parser.add_argument("--category", default="image", choices=["image", "doc", "vector"])
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help=f"API base URL (default {DEFAULT_BASE_URL})")
    parser.add_argument("--output", type=Path, help="Where to write the result (default: server file name)")
    parser.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    args = parser.parse_args(argv)

    if not args.file.is_file():
        parser.error(f"{args.file} is not a file")
    try:
        result = convert_file(
            args.base_url, args.file, args.to, args.category,
            timeout_ms=args.timeout_ms, on_update=_print_progress,
        )
    except SubmissionError as e:
        print(f"Rejected: {e}", file=sys.stderr)
        return 2
    if result.status != "done":
        print(f"Failed: {result.message}", file=sys.stderr)
        return 1
    output = args.output or args.file.with_name(result.file_name or f"{args.file.stem}.{args.to}")
    output.write_bytes(result.content())
    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
