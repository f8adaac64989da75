#!/usr/bin/env python3
"""
Caption one image through a two-step fallback chain built in code.

No state file is needed: the channels and the schedule group are created
in memory, so this doubles as a quick check that both endpoints respond.
"""

import asyncio
import json
import os
import sys
from pathlib import Path

import click

# Add parent directory to path for local development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from captionrelay.clients import OpenAICompatibleCaller
from captionrelay.dispatch import DispatchEngine
from captionrelay.pipeline import build_payload
from captionrelay.store import StateStore
from captionrelay.types import (
    AppState,
    Channel,
    DispatchRequest,
    GlobalRules,
    ImageInput,
    ScheduleGroup,
    Step,
)

PROMPT = "List the visual elements of this image as comma separated tags."


@click.command()
@click.argument("image", type=str)
@click.option("--primary-url", required=True, help="Base URL of the first provider.")
@click.option("--primary-model", required=True, help="Model on the first provider.")
@click.option("--fallback-url", required=True, help="Base URL of the fallback provider.")
@click.option("--fallback-model", required=True, help="Model on the fallback provider.")
@click.option(
    "--api-key",
    type=str,
    default=None,
    envvar="OPENAI_API_KEY",
    help="Key used for both providers. Can also be set via OPENAI_API_KEY.",
)
@click.option("--retries", type=int, default=1, show_default=True, help="Retries on the first provider.")
@click.option("--timeout", type=float, default=60.0, show_default=True, help="Per-attempt timeout in seconds.")
@click.option("--min-chars", type=int, default=20, show_default=True)
def main(
    image: str,
    primary_url: str,
    primary_model: str,
    fallback_url: str,
    fallback_model: str,
    api_key: str | None,
    retries: int,
    timeout: float,
    min_chars: int,
):
    """
    Caption IMAGE (file path or URL) with a primary provider and a fallback.

    \b
    Example:
        python fallback_chain.py cat.png \\
            --primary-url https://api.openai.com --primary-model gpt-4o-mini \\
            --fallback-url http://localhost:8000/v1 --fallback-model qwen2-vl
    """
    if not ImageInput(source=image).is_url() and not Path(image).is_file():
        raise click.ClickException(f"Image file not found: {image}")

    keys = [api_key or os.environ.get("OPENAI_API_KEY", "")]
    state = AppState(
        channels=[
            Channel(id="primary", api_url=primary_url, api_keys=keys),
            Channel(id="fallback", api_url=fallback_url, api_keys=keys),
        ],
        schedule_groups=[
            ScheduleGroup(
                id="example",
                timeout_sec=timeout,
                steps=[
                    Step(channel_id="primary", model=primary_model, retries=retries, interval=1),
                    Step(channel_id="fallback", model=fallback_model),
                ],
            )
        ],
        global_rules=GlobalRules(min_chars=min_chars, max_chars=None, auto_retry=True),
    )
    request = DispatchRequest(
        schedule_group_id="example",
        payload=build_payload(ImageInput(source=image), user_text=PROMPT),
    )

    async def _async_main():
        async with OpenAICompatibleCaller() as caller:
            engine = DispatchEngine(StateStore(state), caller)
            return await engine.dispatch(request)

    result = asyncio.run(_async_main())

    click.echo("=" * 60)
    click.echo("ATTEMPTS")
    click.echo("=" * 60)
    for attempt in result.attempts:
        click.echo(json.dumps(attempt.to_dict(), ensure_ascii=False))

    click.echo()
    click.echo("=" * 60)
    if result.ok:
        click.echo(f"CAPTION (step={result.step['channelId']}, attempt={result.attempt})")
        click.echo("=" * 60)
        click.echo(result.text)
    else:
        click.echo("FAILED")
        click.echo("=" * 60)
        click.echo(json.dumps(result.to_dict()["errors"], indent=2, ensure_ascii=False))
        sys.exit(1)


if __name__ == "__main__":
    main()
