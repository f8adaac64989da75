"""
Labeling loop: runs a directory of images through a schedule group.

Each image is one independent dispatch. A fixed-size pool of workers pulls
images off a shared queue; a failed image never stops its siblings.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import aiofiles

from captionrelay.dispatch.engine import DispatchEngine
from captionrelay.errors import CaptionRelayError, NotFoundError
from captionrelay.pipeline.stats import StatsLogger
from captionrelay.types import (
    DispatchRequest,
    ImageInput,
    LabelResult,
    ScheduleGroup,
    TagResult,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif")

# Added on top of the worst-case chain duration for one image
DISPATCH_TIMEOUT_BUFFER_SEC = 15.0


def natural_key(name: str) -> list[Any]:
    """Sort key treating digit runs as numbers: img2 < img10."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def find_images(
    input_dir: str | Path,
    extensions: tuple[str, ...] = IMAGE_EXTENSIONS,
) -> list[Path]:
    """Image files directly inside input_dir, in natural name order."""
    images = [
        path
        for path in Path(input_dir).iterdir()
        if path.is_file() and path.suffix.lower() in extensions
    ]
    return sorted(images, key=lambda p: natural_key(p.name))


def tag_text_path(image_path: str | Path) -> Path:
    """Tag file next to the image: foo.png -> foo.txt."""
    return Path(image_path).with_suffix(".txt")


def resolve_concurrency(group: ScheduleGroup) -> int:
    """Largest enabled-step concurrency, else the group's, else 1."""
    step_max = max(
        (step.concurrency or 0 for step in group.enabled_steps()),
        default=0,
    )
    if step_max > 0:
        return step_max
    if group.concurrency and group.concurrency > 0:
        return group.concurrency
    return 1


def compute_dispatch_timeout(group: ScheduleGroup) -> float:
    """
    Outer time budget in seconds for dispatching one image.

    Every attempt of every enabled step timing out, plus the waits between
    attempts, plus a fixed buffer.
    """
    total = 0.0
    for step in group.enabled_steps():
        retries = max(step.retries, 0)
        interval = step.interval if step.interval > 0 else 0.0
        total += (retries + 1) * group.step_timeout(step) + retries * interval
    if total <= 0:
        total = group.step_timeout(group.steps[0]) if group.steps else 60.0
    return total + DISPATCH_TIMEOUT_BUFFER_SEC


def build_payload(image: ImageInput, system_text: str = "", user_text: str = "") -> dict[str, Any]:
    """Chat completion payload with the image as a data URL."""
    user_content: list[dict[str, Any]] = []
    if user_text:
        user_content.append({"type": "text", "text": user_text})
    url = str(image.source) if image.is_url() else image.to_base64()
    user_content.append({"type": "image_url", "image_url": {"url": url}})

    messages: list[dict[str, Any]] = []
    if system_text:
        messages.append({"role": "system", "content": system_text})
    messages.append({"role": "user", "content": user_content})
    return {"model": "", "messages": messages}


def failure_text(error: str, detail: str = "") -> str:
    """Text stored for an image whose dispatch failed."""
    return f"Failed: {error} {detail}".rstrip()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PipelineConfig:
    """Configuration for the labeling pipeline."""

    system_prompt: str = ""
    user_prompt: str = ""
    concurrency: int | None = None  # None: derived from the schedule group
    dispatch_timeout: float | None = None  # None: derived from the schedule group
    min_chars: int | None = None  # None: global rules
    max_chars: int | None = None
    auto_retry: bool | None = None


class LabelingPipeline:
    """
    Labels images by dispatching each one through a schedule group.

    Example:
        pipeline = LabelingPipeline(engine, PipelineConfig(user_prompt="Tag this image"))
        results = await pipeline.run(find_images("./images"), "group-1")
        await save_results(results, "./images")
    """

    def __init__(
        self,
        engine: DispatchEngine,
        config: PipelineConfig | None = None,
        stats_logger: StatsLogger | None = None,
        label_log_sink: Callable[[dict[str, Any]], None] | None = None,
    ):
        self.engine = engine
        self.config = config or PipelineConfig()
        self.stats_logger = stats_logger or StatsLogger(enable_file_logging=False)
        self.label_log_sink = label_log_sink

    def _group(self, schedule_group_id: str) -> ScheduleGroup:
        group = self.engine.directory.get_schedule_group(schedule_group_id)
        if group is None:
            raise NotFoundError(f"Schedule group not found: {schedule_group_id!r}")
        return group

    async def label_one(
        self,
        image_path: str | Path,
        group: ScheduleGroup,
        cancel_event: asyncio.Event | None = None,
    ) -> LabelResult:
        """Dispatch a single image. Never raises for dispatch failures."""
        image_path = Path(image_path)
        started = time.perf_counter()
        log_entry: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "createdAt": _now(),
            "durationMs": 0,
            "status": "running",
            "events": [],
            "image": {"name": image_path.name, "path": str(image_path)},
            "scheduleGroup": {"id": group.id, "name": group.name},
            "prompt": {
                "systemText": self.config.system_prompt,
                "userText": self.config.user_prompt,
            },
        }

        def add_event(event_type: str, message: str, detail: Any = None) -> None:
            log_entry["events"].append(
                {"ts": _now(), "type": event_type, "message": message, "detail": detail}
            )

        timeout = self.config.dispatch_timeout or compute_dispatch_timeout(group)
        try:
            payload = build_payload(
                ImageInput(source=image_path),
                self.config.system_prompt,
                self.config.user_prompt,
            )
            request = DispatchRequest(
                schedule_group_id=group.id,
                payload=payload,
                min_chars=self.config.min_chars,
                max_chars=self.config.max_chars,
                auto_retry=self.config.auto_retry,
            )
            add_event("dispatch_start", "Dispatch started", {"timeoutSec": timeout})
            dispatch = await asyncio.wait_for(
                self.engine.dispatch(request, cancel_event),
                timeout=timeout,
            )
            add_event(
                "dispatch_attempts",
                "Attempt trace",
                {
                    "count": len(dispatch.attempts),
                    "attempts": [a.to_dict() for a in dispatch.attempts],
                },
            )

            if dispatch.ok:
                text = dispatch.text
                result = LabelResult(
                    image_path=image_path,
                    ok=True,
                    text=text,
                    step=dispatch.step,
                    attempt=dispatch.attempt,
                    attempts=dispatch.attempts,
                )
            else:
                detail = (
                    json.dumps(dispatch.errors[0].to_dict(), ensure_ascii=False)
                    if dispatch.errors
                    else ""
                )
                error = "Cancelled" if dispatch.cancelled else "All steps failed"
                result = LabelResult(
                    image_path=image_path,
                    ok=False,
                    text=failure_text(error, detail),
                    error=error,
                    detail=detail,
                    attempts=dispatch.attempts,
                )
            add_event("result", "Labeling finished", {"ok": result.ok, "textLength": len(result.text)})
        except asyncio.TimeoutError:
            error = f"Dispatch timed out after {timeout:g}s"
            result = LabelResult(image_path=image_path, ok=False, text=failure_text(error), error=error)
            add_event("error", "Labeling failed", {"error": error})
        except (CaptionRelayError, OSError) as e:
            error = f"{type(e).__name__}: {e}"
            result = LabelResult(image_path=image_path, ok=False, text=failure_text(error), error=error)
            add_event("error", "Labeling failed", {"error": error})
        except Exception as e:
            logger.exception(f"Unexpected error labeling {image_path.name}")
            error = f"{type(e).__name__}: {e}"
            result = LabelResult(image_path=image_path, ok=False, text=failure_text(error), error=error)
            add_event("error", "Labeling failed", {"error": error})

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        log_entry["durationMs"] = result.duration_ms
        log_entry["status"] = "ok" if result.ok else "fail"
        log_entry["result"] = {
            "ok": result.ok,
            "text": result.text,
            "error": result.error or "",
            "detail": result.detail,
            "meta": {"step": result.step, "attempt": result.attempt} if result.ok else None,
        }

        self.stats_logger.record(result)
        if self.label_log_sink is not None:
            self.label_log_sink(log_entry)

        if result.ok:
            logger.info(f"{image_path.name}: ok ({len(result.text)} chars, {result.duration_ms}ms)")
        else:
            logger.warning(f"{image_path.name}: {result.error}")
        return result

    async def run(
        self,
        images: list[str | Path],
        schedule_group_id: str,
        cancel_event: asyncio.Event | None = None,
        progress: Callable[[LabelResult], None] | None = None,
    ) -> list[LabelResult]:
        """
        Label images with a bounded pool of workers.

        Workers stop pulling new images once cancel_event is set; images
        never started have no result. Results come back in input order.

        Raises:
            NotFoundError: Unknown schedule group
        """
        group = self._group(schedule_group_id)
        if not images:
            return []

        concurrency = max(1, self.config.concurrency or resolve_concurrency(group))
        queue: asyncio.Queue[tuple[int, Path]] = asyncio.Queue()
        for index, image in enumerate(images):
            queue.put_nowait((index, Path(image)))
        results: list[LabelResult | None] = [None] * len(images)

        logger.info(
            f"Labeling {len(images)} images with group {group.name or group.id} "
            f"(concurrency={concurrency})"
        )

        async def worker() -> None:
            while cancel_event is None or not cancel_event.is_set():
                try:
                    index, image_path = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                result = await self.label_one(image_path, group, cancel_event)
                results[index] = result
                if progress is not None:
                    progress(result)

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(concurrency, len(images)))
        ]
        await asyncio.gather(*workers)

        if cancel_event is not None and cancel_event.is_set():
            logger.warning(f"Labeling stopped: {queue.qsize()} images not started")
        return [result for result in results if result is not None]


async def save_tag(
    image_path: str | Path,
    text: str,
    text_path: str | Path | None = None,
) -> Path:
    """Write tag text next to the image (or to text_path)."""
    target = Path(text_path) if text_path else tag_text_path(image_path)
    async with aiofiles.open(target, "w", encoding="utf-8") as f:
        await f.write(text or "")
    return target


async def save_results(
    results: list[LabelResult],
    target_dir: str | Path,
    include_failed: bool = False,
) -> Path:
    """
    Write <stem>.txt per result into target_dir plus a results.json index.

    Failed results are skipped unless include_failed is set.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    saved = []
    for result in results:
        if result.failed and not include_failed:
            continue
        text_path = target_dir / f"{result.image_path.stem}.txt"
        await save_tag(result.image_path, result.text, text_path)
        saved.append({"textPath": str(text_path), "sourcePath": str(result.image_path)})

    index_path = target_dir / "results.json"
    async with aiofiles.open(index_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(saved, indent=2, ensure_ascii=False))
    logger.info(f"Saved {len(saved)} tag files to {target_dir}")
    return index_path


def scan_tag_results(input_dir: str | Path) -> list[TagResult]:
    """Every image in input_dir with its current tag text ("" if none)."""
    results = []
    for image_path in find_images(input_dir):
        text_path = tag_text_path(image_path)
        try:
            text = text_path.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError):
            text = ""
        results.append(
            TagResult(
                name=image_path.name,
                image_path=image_path,
                text_path=text_path,
                text=text,
            )
        )
    return results


def find_short_results(results: list[TagResult], threshold: int) -> list[TagResult]:
    """Tag results whose stripped text is shorter than threshold."""
    return [result for result in results if result.text_length < threshold]


async def retry_short(
    pipeline: LabelingPipeline,
    input_dir: str | Path,
    schedule_group_id: str,
    threshold: int,
    cancel_event: asyncio.Event | None = None,
    progress: Callable[[LabelResult], None] | None = None,
) -> tuple[list[TagResult], list[LabelResult]]:
    """
    Re-label images whose tag text is shorter than threshold.

    Successful results overwrite the existing tag file; failures leave it
    untouched.

    Returns:
        (candidates that were below threshold, label results)
    """
    candidates = find_short_results(scan_tag_results(input_dir), threshold)
    logger.info(f"{len(candidates)} tag files below {threshold} chars in {input_dir}")
    if not candidates:
        return candidates, []

    by_image = {candidate.image_path: candidate for candidate in candidates}
    results = await pipeline.run(
        [candidate.image_path for candidate in candidates],
        schedule_group_id,
        cancel_event=cancel_event,
        progress=progress,
    )
    for result in results:
        if result.ok:
            await save_tag(result.image_path, result.text, by_image[result.image_path].text_path)
    return candidates, results
