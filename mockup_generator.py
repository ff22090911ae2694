"""
Mockup Generator — Gemini image editing, tracked on the processes panel.

Takes an uploaded screenshot + a diagnosed problem + a suggested fix and
asks Gemini for a modified screenshot with the fix applied. The route
registers the "mockup" process; run_mockup_job() reports progress on it and
always ends it with either complete or error.
"""

import asyncio
import logging
import os
from typing import Callable

from google import genai
from google.genai import types
from PIL import Image

from progress import ProgressHub

logger = logging.getLogger(__name__)

MODEL = "gemini-3-pro-image-preview"

MOCKUP_PROMPT = """You are a UI/UX designer. This screenshot shows a real app interface.

Problem identified: {problem}
Suggested fix: {suggestion}

Generate a modified version of this screenshot that applies the suggested fix.
Keep the overall layout and design language identical — only modify the specific
element mentioned. Make the change look natural and production-ready."""


class MockupGenerationError(RuntimeError):
    """Gemini answered without an image."""


def mockup_path_for(frame_path: str) -> str:
    root, _ = os.path.splitext(frame_path)
    return f"{root}_mockup.png"


async def generate_mockup(frame_path: str, problem: str, suggestion: str) -> str:
    """
    Generate a UI mockup showing the suggested fix applied to the original frame.

    Returns path to the saved mockup image.
    """
    client = genai.Client(api_key=os.getenv("GEMINI_API_KEY"))
    image = Image.open(frame_path)
    prompt = MOCKUP_PROMPT.format(problem=problem, suggestion=suggestion)

    logger.info("[Mockup] Calling Gemini %s for %s", MODEL, frame_path)
    response = await asyncio.to_thread(
        client.models.generate_content,
        model=MODEL,
        contents=[prompt, image],
        config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
    )

    mockup_path = mockup_path_for(frame_path)
    for part in response.parts or []:
        if part.inline_data is not None:
            part.as_image().save(mockup_path)
            return mockup_path

    raise MockupGenerationError("Gemini returned no image")


async def run_mockup_job(
    hub: ProgressHub,
    owner_id: str,
    process_id: str,
    frame_path: str,
    problem: str,
    suggestion: str,
    url_for: Callable[[str], str] = lambda path: path,
) -> str | None:
    """Run one registered mockup process to completion. Returns the mockup URL, or None on failure."""
    hub.update_process(owner_id, process_id, progress_percent=10, message="Reading screenshot...")
    try:
        hub.update_process(owner_id, process_id, progress_percent=30, message="Generating suggested UI mockup...")
        mockup_path = await generate_mockup(frame_path, problem, suggestion)
    except Exception as e:
        logger.error("[Mockup] Generation failed for %s: %s", process_id, e)
        hub.error_process(owner_id, process_id, f"Mockup generation failed: {e}")
        return None

    mockup_url = url_for(mockup_path)
    hub.complete_process(
        owner_id,
        process_id,
        result_reference=mockup_url,
        message="Suggested UI mockup ready",
    )
    logger.info("[Mockup] Generated %s", mockup_url)
    return mockup_url
