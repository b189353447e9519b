from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from .settings import Settings


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdf-relay",
        description="Download real PDFs through headless Chromium, past placeholder responses.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "serve",
        help="Start the HTTP service (extra arguments go to the server).",
        description="Start the HTTP service. Arguments after `serve` are forwarded to the server.",
    )

    fetch = subparsers.add_parser(
        "fetch",
        help="Fetch one PDF locally and write it to disk.",
        description="Run a single acquisition with a private browser and write the PDF to a file.",
    )
    fetch.add_argument("url", help="Document or landing-page URL.")
    fetch.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output file (default: the URL's PDF file name, or file.pdf).",
    )
    return parser


async def _fetch_once(url: str, settings: Settings) -> bytes:
    from .service import PdfFetchService

    service = PdfFetchService(settings)
    try:
        return await service.fetch(url)
    finally:
        await service.close()


def _run_fetch(args: argparse.Namespace) -> int:
    from .server import filename_for_url

    output = Path(args.output or filename_for_url(args.url))
    try:
        pdf = asyncio.run(_fetch_once(args.url, Settings.from_env()))
    except Exception as exc:
        print(f"Error: failed to fetch pdf: {exc}", file=sys.stderr)
        return 1
    output.write_bytes(pdf)
    print(f"Wrote {len(pdf)} bytes to {output}")
    return 0


def main(argv: list[str] | None = None) -> None:
    from .server import main as server_main

    parser = _build_arg_parser()
    args, forwarded_args = parser.parse_known_args(argv)

    if args.command == "serve":
        if forwarded_args[:1] == ["--"]:
            forwarded_args = forwarded_args[1:]
        server_main(forwarded_args)
        return

    if forwarded_args:
        parser.error(f"unrecognized arguments: {' '.join(forwarded_args)}")
    raise SystemExit(_run_fetch(args))
