"""
Command line interface for CaptionRelay.

    captionrelay --state data.json label ./images --group my-group
    captionrelay retry ./images --group my-group --threshold 200
    captionrelay dispatch my-group ./images/0001.png
    captionrelay diagnose
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click
from tqdm import tqdm

from captionrelay.clients import OpenAICompatibleCaller
from captionrelay.dispatch import DispatchEngine
from captionrelay.errors import CaptionRelayError
from captionrelay.pipeline import (
    LabelingPipeline,
    PipelineConfig,
    StatsLogger,
    build_payload,
    find_images,
    find_short_results,
    retry_short,
    save_results,
    scan_tag_results,
)
from captionrelay.store import StateStore
from captionrelay.types import DispatchRequest, ImageInput, LabelResult

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Silence noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _install_cancel_handler(cancel_event: asyncio.Event) -> None:
    """First Ctrl+C stops new attempts and aborts in-flight calls."""
    loop = asyncio.get_running_loop()

    def _signal_handler(signum, frame):
        loop.call_soon_threadsafe(cancel_event.set)

    signal.signal(signal.SIGINT, _signal_handler)


def _run(coro):
    try:
        return asyncio.run(coro)
    except CaptionRelayError as e:
        raise click.ClickException(f"{e.kind}: {e}") from e


def _pipeline_config(
    system_prompt: str | None,
    user_prompt: str | None,
    concurrency: int | None,
    min_chars: int | None,
    max_chars: int | None,
    auto_retry: bool | None,
) -> PipelineConfig:
    return PipelineConfig(
        system_prompt=system_prompt or "",
        user_prompt=user_prompt or "",
        concurrency=concurrency,
        min_chars=min_chars,
        max_chars=max_chars,
        auto_retry=auto_retry,
    )


def _read_prompt(value: str | None) -> str | None:
    """Allow @file.txt for prompts."""
    if value and value.startswith("@"):
        return Path(value[1:]).read_text(encoding="utf-8").strip()
    return value


_pipeline_options = [
    click.option("--group", "-g", "group_id", required=True, help="Schedule group id"),
    click.option("--system-prompt", "-s", type=str, default=None, help="System prompt text or @file"),
    click.option("--user-prompt", "-u", type=str, default=None, help="User prompt text or @file"),
    click.option("--concurrency", "-c", type=click.IntRange(min=1), default=None, help="Images in flight (default: from group)"),
    click.option("--min-chars", type=int, default=None, help="Override globalRules.minChars"),
    click.option("--max-chars", type=int, default=None, help="Override globalRules.maxChars"),
    click.option("--auto-retry/--no-auto-retry", default=None, help="Override globalRules.autoRetry"),
    click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
                 help="Append per-image stats as JSONL"),
]


def pipeline_options(func):
    for option in reversed(_pipeline_options):
        func = option(func)
    return func


@click.group()
@click.option(
    "--state",
    type=click.Path(dir_okay=False, path_type=Path),
    default="data.json",
    show_default=True,
    envvar="CAPTIONRELAY_STATE",
    help="Application state file (channels, schedule groups, rules)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, state: Path, verbose: bool):
    """Caption images through ordered fallback chains of LLM providers."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.obj = StateStore.load(state)


@cli.command()
@click.argument("group_id")
@click.argument("image", type=str)
@click.option("--system-prompt", "-s", type=str, default=None)
@click.option("--user-prompt", "-u", type=str, default=None)
@click.option("--min-chars", type=int, default=None)
@click.option("--max-chars", type=int, default=None)
@click.option("--auto-retry/--no-auto-retry", default=None)
@click.pass_obj
def dispatch(
    store: StateStore,
    group_id: str,
    image: str,
    system_prompt: str | None,
    user_prompt: str | None,
    min_chars: int | None,
    max_chars: int | None,
    auto_retry: bool | None,
):
    """Dispatch a single IMAGE (path or URL) and print the result JSON."""
    payload = build_payload(
        ImageInput(source=image),
        _read_prompt(system_prompt) or "",
        _read_prompt(user_prompt) or "",
    )
    request = DispatchRequest(
        schedule_group_id=group_id,
        payload=payload,
        min_chars=min_chars,
        max_chars=max_chars,
        auto_retry=auto_retry,
    )

    async def _main():
        cancel_event = asyncio.Event()
        _install_cancel_handler(cancel_event)
        async with OpenAICompatibleCaller() as caller:
            engine = DispatchEngine(store, caller)
            return await engine.dispatch(request, cancel_event)

    result = _run(_main())
    _echo_json(result.to_dict())
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.argument("input_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@pipeline_options
@click.option("--output-dir", "-o", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Where to write tag files (default: next to the images)")
@click.option("--skip-existing/--no-skip-existing", default=False, help="Skip images that already have a tag file")
@click.option("--save-failed/--no-save-failed", default=False, help="Also write failure text to tag files")
@click.pass_obj
def label(
    store: StateStore,
    input_dir: Path,
    group_id: str,
    system_prompt: str | None,
    user_prompt: str | None,
    concurrency: int | None,
    min_chars: int | None,
    max_chars: int | None,
    auto_retry: bool | None,
    log_file: Path | None,
    output_dir: Path | None,
    skip_existing: bool,
    save_failed: bool,
):
    """Label every image in INPUT_DIR."""
    output_dir = output_dir or input_dir
    images = find_images(input_dir)
    if skip_existing:
        images = [path for path in images if not (output_dir / f"{path.stem}.txt").exists()]
    if not images:
        click.echo("No images to process.")
        return

    config = _pipeline_config(
        _read_prompt(system_prompt),
        _read_prompt(user_prompt),
        concurrency,
        min_chars,
        max_chars,
        auto_retry,
    )
    stats_logger = StatsLogger(log_file=log_file)

    async def _main() -> list[LabelResult]:
        cancel_event = asyncio.Event()
        _install_cancel_handler(cancel_event)
        async with OpenAICompatibleCaller() as caller:
            engine = DispatchEngine(store, caller)
            pipeline = LabelingPipeline(engine, config, stats_logger, store.append_label_log)
            with tqdm(total=len(images), desc="Labeling", unit="img") as pbar:

                def _progress(result: LabelResult) -> None:
                    pbar.update(1)
                    pbar.set_postfix_str(
                        f"OK:{stats_logger.stats.successful_images} "
                        f"ERR:{stats_logger.stats.failed_images}"
                    )

                results = await pipeline.run(images, group_id, cancel_event, _progress)
            await save_results(results, output_dir, include_failed=save_failed)
            if cancel_event.is_set():
                click.echo(f"\nStopped. {len(images) - len(results)} images not started.")
            return results

    _run(_main())
    store.save()
    _echo_json(stats_logger.get_summary())


@cli.command()
@click.argument("input_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@pipeline_options
@click.option("--threshold", "-t", type=int, default=200, show_default=True,
              help="Re-label images whose tag text is shorter than this")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def retry(
    store: StateStore,
    input_dir: Path,
    group_id: str,
    system_prompt: str | None,
    user_prompt: str | None,
    concurrency: int | None,
    min_chars: int | None,
    max_chars: int | None,
    auto_retry: bool | None,
    log_file: Path | None,
    threshold: int,
    yes: bool,
):
    """Re-label images in INPUT_DIR whose tag text is too short."""
    scanned = scan_tag_results(input_dir)
    short = find_short_results(scanned, threshold)
    lengths = [result.text_length for result in scanned]
    click.echo(
        f"{len(scanned)} images, {len(short)} below {threshold} chars "
        f"(shortest {min(lengths, default=0)}, longest {max(lengths, default=0)}, "
        f"empty {lengths.count(0)})"
    )
    if not short:
        return
    if not yes and not click.confirm("Start re-labeling?", default=True):
        return

    config = _pipeline_config(
        _read_prompt(system_prompt),
        _read_prompt(user_prompt),
        concurrency,
        min_chars,
        max_chars,
        auto_retry,
    )
    stats_logger = StatsLogger(log_file=log_file)

    async def _main():
        cancel_event = asyncio.Event()
        _install_cancel_handler(cancel_event)
        async with OpenAICompatibleCaller() as caller:
            engine = DispatchEngine(store, caller)
            pipeline = LabelingPipeline(engine, config, stats_logger, store.append_label_log)
            with tqdm(total=len(short), desc="Retrying", unit="img") as pbar:
                return await retry_short(
                    pipeline,
                    input_dir,
                    group_id,
                    threshold,
                    cancel_event=cancel_event,
                    progress=lambda _: pbar.update(1),
                )

    _run(_main())
    store.save()
    _echo_json(stats_logger.get_summary())


@cli.command()
@click.pass_obj
def diagnose(store: StateStore):
    """Check configuration consistency."""
    report = store.diagnostics()
    for item in report["items"]:
        click.echo(f"[{item['level'].upper()}] {item['code']}: {item['message']}")
    summary = report["summary"]
    click.echo(
        f"\n{summary['error']} errors, {summary['warning']} warnings, {summary['info']} info"
    )
    if summary["error"]:
        sys.exit(1)


@cli.command()
@click.pass_obj
def overview(store: StateStore):
    """Print configuration counts and global rules."""
    _echo_json(store.overview())


@cli.command()
@click.argument("channel_id")
@click.pass_obj
def models(store: StateStore, channel_id: str):
    """List models offered by a channel's endpoint."""
    channel = store.get_channel(channel_id)
    if channel is None:
        raise click.ClickException(f"Channel not found: {channel_id}")
    api_key = channel.usable_keys()[0] if channel.usable_keys() else ""

    async def _main():
        async with OpenAICompatibleCaller() as caller:
            return await caller.list_models(channel.api_url, api_key)

    response = _run(_main())
    _echo_json(response.json)
    if not response.ok:
        sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
