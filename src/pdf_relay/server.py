from __future__ import annotations

import argparse
import base64
import contextlib
import json
import logging
import os
import posixpath
import re
import secrets
from typing import Literal
from urllib.parse import unquote, urlparse

import anyio
import uvicorn
from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from .models import DownloadRequest, DownloadToolResponse, ErrorResponse
from .service import get_service
from .settings import DEFAULT_API_KEY
from .utils.logging import configure_logging

configure_logging()
LOGGER = logging.getLogger(__name__)

mcp = FastMCP(
    "pdf-relay",
    instructions=(
        "Download real PDF documents through a headless Chromium, working around sites that "
        "answer automated clients with placeholder (stub) PDFs."
    ),
)

Transport = Literal["stdio", "streamable-http"]

DEFAULT_FILENAME = "file.pdf"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _is_authorized(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _error(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details).model_dump(exclude_none=True)
    return JSONResponse(body, status_code=status_code)


def filename_for_url(url: str) -> str:
    """Attachment name for a PDF fetched from `url`: the path's basename if it is a .pdf."""
    name = posixpath.basename(unquote(urlparse(url).path or ""))
    if not name.lower().endswith(".pdf"):
        return DEFAULT_FILENAME
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    if not name.lower().endswith(".pdf") or len(name) <= len(".pdf"):
        return DEFAULT_FILENAME
    return name


class ApiKeyMiddleware:
    """Require `x-api-key` on every HTTP request under `protected_prefix` (the MCP endpoint)."""

    def __init__(self, app: ASGIApp, *, api_key: str, protected_prefix: str) -> None:
        self.app = app
        self.api_key = api_key
        self.protected_prefix = protected_prefix

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"].startswith(self.protected_prefix):
            headers = Headers(scope=scope)
            if not _is_authorized(headers.get("x-api-key"), self.api_key):
                response = _error(401, "missing or invalid API key")
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


@mcp.custom_route("/download", methods=["POST"])
async def download(request: Request) -> Response:
    service = get_service()
    if not _is_authorized(request.headers.get("x-api-key"), service.settings.api_key):
        return _error(401, "missing or invalid API key")

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None
    try:
        body = DownloadRequest.model_validate(payload if isinstance(payload, dict) else {})
    except ValidationError:
        return _error(400, "missing url in JSON body")

    try:
        pdf = await service.fetch(body.url)
    except Exception as exc:
        return _error(500, "failed to fetch pdf", str(exc) or type(exc).__name__)

    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename_for_url(body.url)}"',
        },
    )


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> Response:
    report = get_service().health()
    return JSONResponse(report.model_dump(by_alias=True))


@mcp.tool()
async def download_pdf(url: str) -> dict:
    """Download the real PDF behind `url` and return it base64-encoded.

    When to use:
    - A link points at a PDF (directly or through a viewer page) and plain HTTP clients get
      an HTML shell or a placeholder document instead of the file.

    Args:
    - url: The document or landing-page URL.

    Returns:
    - `{"url": str, "size_bytes": int, "pdf_base64": str}`

    Notes:
    - Requests share one browser and run one at a time, in arrival order.
    - Fails when no response that passes the `%PDF-` signature check is seen, even after an
      in-page re-fetch of stub responses.
    """

    try:
        body = DownloadRequest.model_validate({"url": url})
    except ValidationError as exc:
        raise ValueError("url must be a non-empty string") from exc

    pdf = await get_service().fetch(body.url)
    return DownloadToolResponse(
        url=body.url,
        size_bytes=len(pdf),
        pdf_base64=base64.b64encode(pdf).decode("ascii"),
    ).model_dump()


def create_app() -> Starlette:
    """Build the HTTP app: `/download`, `/health` and the MCP endpoint behind the API key."""
    service = get_service()
    app = mcp.streamable_http_app()
    app.add_middleware(
        ApiKeyMiddleware,
        api_key=service.settings.api_key,
        protected_prefix=mcp.settings.streamable_http_path,
    )

    inner_lifespan = app.router.lifespan_context

    @contextlib.asynccontextmanager
    async def lifespan(starlette_app: Starlette):
        async with inner_lifespan(starlette_app):
            await service.warm_up()
            try:
                yield
            finally:
                await service.close()

    app.router.lifespan_context = lifespan
    return app


async def _run_stdio() -> None:
    # Same event loop as the browser subprocess, so it can be reaped on exit.
    try:
        await mcp.run_stdio_async()
    finally:
        await get_service().close()


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdf-relay-server",
        description="HTTP service (and MCP server) that downloads real PDFs through headless Chromium.",
    )

    transport_group = parser.add_mutually_exclusive_group()
    transport_group.add_argument(
        "--http",
        dest="transport",
        action="store_const",
        const="streamable-http",
        help="Serve POST /download, GET /health and the MCP endpoint over HTTP (default).",
    )
    transport_group.add_argument(
        "--stdio",
        dest="transport",
        action="store_const",
        const="stdio",
        help="Run as an MCP server over stdio (no HTTP endpoints).",
    )

    parser.add_argument(
        "--host",
        default=None,
        help="Bind host (overrides HOST).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Bind port (overrides PORT).",
    )
    return parser


def _resolve_transport(raw: str | None) -> Transport:
    if raw == "stdio":
        return "stdio"
    return "streamable-http"


def main(argv: list[str] | None = None) -> None:
    """
    Entrypoint for running the service.

    Notes:
    - HTTP is the default: `/download` and `/health` are plain routes next to the MCP endpoint.
    - `--stdio` is for MCP hosts that launch the server as a subprocess.
    """
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    transport = _resolve_transport(args.transport)
    if transport == "stdio":
        anyio.run(_run_stdio)
        return

    settings = get_service().settings
    host = args.host or settings.host
    port = args.port if args.port is not None else settings.port
    if settings.api_key == DEFAULT_API_KEY:
        LOGGER.warning("API_KEY is not set; using the development key.")
    LOGGER.info("Listening on port %d (default referer %s)", port, settings.referer)

    log_level = os.environ.get("LOG_LEVEL", "INFO").lower()
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()
