"""
LLM utility functions — retry wrapper and JSON cleanup.

Shared by the risk classifier.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger("gateway.agents.llm_utils")


def strip_code_fences(text: str) -> str:
    """Remove ```json fences that models sometimes add around JSON output."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


async def llm_generate(
    client: Any,
    model: str,
    contents: str,
    config: Any = None,
    max_retries: int = 2,
    critical: bool = False,
) -> str | None:
    """
    Call the LLM with retry and exponential backoff.

    - Default: 2 retries (3 total attempts)
    - critical=True: at least 3 retries (4 total attempts) with longer backoff
    - Exponential backoff: 0.5s, 1.0s, 2.0s (critical: 1.0s, 2.0s, 4.0s)

    Returns the response text, or None if exhausted so callers
    use their deterministic fallback.
    """
    effective_retries = max_retries if not critical else max(max_retries, 3)
    base_backoff = 1.0 if critical else 0.5

    for attempt in range(effective_retries + 1):
        try:
            kwargs: dict[str, Any] = {"model": model, "contents": contents}
            if config is not None:
                kwargs["config"] = config
            response = await client.aio.models.generate_content(**kwargs)
            text = response.text
            if isinstance(text, str) and text.strip():
                return text
            logger.warning("LLM returned empty response (attempt %d)", attempt + 1)
        except Exception as exc:
            logger.warning(
                "LLM call failed (attempt %d/%d): %s",
                attempt + 1, effective_retries + 1, exc,
            )

        if attempt < effective_retries:
            backoff = base_backoff * (2 ** attempt)
            await asyncio.sleep(backoff)

    if effective_retries > 0:
        logger.error(
            "LLM call exhausted all %d attempts — returning None",
            effective_retries + 1,
        )
    return None
