from __future__ import annotations

import os
import sys
from pathlib import Path

import anyio
import httpx


def output_path_for(url: str) -> Path:
    name = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    return Path(name if name.lower().endswith(".pdf") else "file.pdf")


async def main() -> None:
    # Talks to a running service (`pdf-relay serve`); PDF_RELAY_URL/API_KEY come from the environment.
    base_url = os.environ.get("PDF_RELAY_URL", "http://127.0.0.1:3000").rstrip("/")
    api_key = os.environ.get("API_KEY", "dev-key-change-me")
    url = sys.argv[1] if len(sys.argv) > 1 else "https://arxiv.org/pdf/1706.03762"

    async with httpx.AsyncClient(timeout=httpx.Timeout(180.0)) as client:
        health = await client.get(f"{base_url}/health")
        print(f"health: {health.json()}")

        resp = await client.post(
            f"{base_url}/download",
            json={"url": url},
            headers={"x-api-key": api_key},
        )

    if resp.status_code != 200:
        print(f"error {resp.status_code}: {resp.text}", file=sys.stderr)
        raise SystemExit(1)

    target = output_path_for(url)
    target.write_bytes(resp.content)
    print(f"saved {len(resp.content)} bytes to {target}")


if __name__ == "__main__":
    # Run example:
    #   API_KEY=dev-key-change-me python examples/script_download_pdf.py "https://example.com/report.pdf"
    anyio.run(main)
