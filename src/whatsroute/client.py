"""HTTP client factories for the WhatsApp bridge and the analysis model.

Both clients are long-lived httpx.AsyncClient instances owned by the app,
closed explicitly on shutdown.
"""

from __future__ import annotations

import logging
import os

import httpx
from dotenv import load_dotenv

DEFAULT_ANALYZER_URL = "https://api.together.xyz/v1"


def build_bridge_client(timeout_seconds: float = 15.0) -> httpx.AsyncClient:
    """Create the bridge client from environment variables.

    BRIDGE_URL is required; BRIDGE_TOKEN is sent as a bearer token when set.
    """

    load_dotenv()

    base_url = os.getenv("BRIDGE_URL")
    token = os.getenv("BRIDGE_TOKEN")

    # Fail fast on a missing bridge instead of retrying every send.
    if not base_url:
        raise RuntimeError("Missing BRIDGE_URL in environment")

    headers = {"User-Agent": "whatsroute/1.0"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    logging.getLogger(__name__).info("Initializing bridge client for %s", base_url)
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout_seconds)


def build_analyzer_client(timeout_seconds: float = 10.0) -> httpx.AsyncClient:
    """Create the chat-completions client from ANALYZER_URL / ANALYZER_API_KEY."""

    load_dotenv()

    api_key = os.getenv("ANALYZER_API_KEY")
    base_url = os.getenv("ANALYZER_URL", DEFAULT_ANALYZER_URL)
    if not api_key:
        raise RuntimeError("Missing ANALYZER_API_KEY in environment")

    return httpx.AsyncClient(
        base_url=base_url,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        timeout=timeout_seconds,
    )
