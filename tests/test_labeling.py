import asyncio
import json

import pytest

from conftest import FakeCaller, build_engine, make_store, ok_response, run, timeout_error
from captionrelay.errors import NotFoundError
from captionrelay.pipeline import (
    LabelingPipeline,
    PipelineConfig,
    StatsLogger,
    build_payload,
    compute_dispatch_timeout,
    find_images,
    find_short_results,
    resolve_concurrency,
    retry_short,
    save_results,
    scan_tag_results,
    tag_text_path,
)
from captionrelay.types import Channel, ImageInput, ScheduleGroup, Step

GOOD = "https://good.example.com"
BAD = "https://bad.example.com"


@pytest.fixture
def image_dir(tmp_path):
    for name in ["img10.png", "img2.png", "img1.jpg", "notes.md", "IMG3.WEBP"]:
        (tmp_path / name).write_bytes(b"\x89PNG fake")
    return tmp_path


def single_step_store(base_url: str, **step_kwargs):
    channel = Channel(id="c", api_url=base_url, api_keys=["k"])
    group = ScheduleGroup(id="g", name="single", steps=[Step(channel_id="c", model="m", **step_kwargs)])
    return make_store([channel], [group])


def test_find_images_natural_order(image_dir):
    names = [path.name for path in find_images(image_dir)]
    assert names == ["img1.jpg", "img2.png", "IMG3.WEBP", "img10.png"]


def test_tag_text_path():
    assert tag_text_path("/data/a.b.png").name == "a.b.txt"


def test_resolve_concurrency():
    assert resolve_concurrency(ScheduleGroup(id="g")) == 1
    assert resolve_concurrency(ScheduleGroup(id="g", concurrency=3)) == 3
    group = ScheduleGroup(
        id="g",
        concurrency=3,
        steps=[
            Step(channel_id="a", concurrency=2),
            Step(channel_id="b", concurrency=5),
            Step(channel_id="c", concurrency=9, enabled=False),
        ],
    )
    assert resolve_concurrency(group) == 5


def test_compute_dispatch_timeout():
    group = ScheduleGroup(
        id="g",
        timeout_sec=10,
        steps=[
            Step(channel_id="a", retries=2, interval=1),
            Step(channel_id="b", timeout_sec=30),
            Step(channel_id="c", retries=5, enabled=False),
        ],
    )
    # 3 * 10 + 2 * 1 + 1 * 30 + buffer
    assert compute_dispatch_timeout(group) == 62 + 15


def test_build_payload_embeds_image(image_dir):
    payload = build_payload(ImageInput(source=image_dir / "img1.jpg"), "sys", "describe")

    assert payload["messages"][0] == {"role": "system", "content": "sys"}
    user = payload["messages"][1]["content"]
    assert user[0] == {"type": "text", "text": "describe"}
    assert user[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_build_payload_keeps_urls():
    payload = build_payload(ImageInput(source="https://cdn.example.com/a.png"))
    assert payload["messages"] == [
        {
            "role": "user",
            "content": [{"type": "image_url", "image_url": {"url": "https://cdn.example.com/a.png"}}],
        }
    ]


def test_run_labels_every_image_and_saves(image_dir):
    caller = FakeCaller({GOOD: lambda body: ok_response("tags for image")})
    store = single_step_store(GOOD)
    logs = []
    pipeline = LabelingPipeline(
        build_engine(store, caller),
        PipelineConfig(user_prompt="tag", concurrency=2),
        label_log_sink=logs.append,
    )
    images = find_images(image_dir)
    seen = []

    results = run(pipeline.run(images, "g", progress=seen.append))

    assert [r.image_path for r in results] == images
    assert all(r.ok and r.text == "tags for image" for r in results)
    assert len(seen) == 4
    assert len(caller.calls) == 4
    assert pipeline.stats_logger.stats.successful_images == 4

    assert len(logs) == 4
    assert logs[0]["status"] == "ok"
    assert [e["type"] for e in logs[0]["events"]] == ["dispatch_start", "dispatch_attempts", "result"]
    assert logs[0]["result"]["meta"] == {"step": {"channelId": "c", "model": "m"}, "attempt": 1}

    index = run(save_results(results, image_dir))
    assert (image_dir / "img10.txt").read_text(encoding="utf-8") == "tags for image"
    assert len(json.loads(index.read_text(encoding="utf-8"))) == 4


def test_failed_image_does_not_stop_siblings(image_dir):
    images = find_images(image_dir)
    calls = iter(range(100))
    caller = FakeCaller({GOOD: lambda body: timeout_error() if next(calls) == 1 else ok_response("fine")})
    pipeline = LabelingPipeline(
        build_engine(single_step_store(GOOD), caller),
        PipelineConfig(concurrency=1, auto_retry=False),
    )

    results = run(pipeline.run(images, "g"))

    assert [r.ok for r in results] == [True, False, True, True]
    failed = results[1]
    assert failed.error == "All steps failed"
    assert failed.text.startswith("Failed: All steps failed")
    assert json.loads(failed.detail)["kind"] == "NetworkError"

    run(save_results(results, image_dir))
    assert not tag_text_path(images[1]).exists()
    assert tag_text_path(images[0]).exists()


def test_save_results_can_include_failures(image_dir, tmp_path):
    caller = FakeCaller({BAD: timeout_error()})
    pipeline = LabelingPipeline(build_engine(single_step_store(BAD), caller))
    results = run(pipeline.run(find_images(image_dir)[:1], "g"))

    out = tmp_path / "out"
    run(save_results(results, out, include_failed=True))

    assert (out / "img1.txt").read_text(encoding="utf-8").startswith("Failed:")


def test_outer_timeout_marks_image_failed(image_dir):
    class SlowCaller(FakeCaller):
        async def _post_chat(self, base_url, api_key, body, timeout):
            await asyncio.sleep(5)
            return ok_response("late")

    pipeline = LabelingPipeline(
        build_engine(single_step_store(GOOD), SlowCaller()),
        PipelineConfig(dispatch_timeout=0.05),
    )

    results = run(pipeline.run(find_images(image_dir)[:1], "g"))

    assert not results[0].ok
    assert "timed out" in results[0].error


def test_unknown_group_raises(image_dir):
    pipeline = LabelingPipeline(build_engine(single_step_store(GOOD), FakeCaller()))

    with pytest.raises(NotFoundError):
        run(pipeline.run(find_images(image_dir), "missing"))


def test_cancel_stops_pulling_new_images(image_dir):
    caller = FakeCaller({GOOD: ok_response("fine")})
    pipeline = LabelingPipeline(
        build_engine(single_step_store(GOOD), caller),
        PipelineConfig(concurrency=1),
    )

    async def go():
        cancel = asyncio.Event()
        return await pipeline.run(find_images(image_dir), "g", cancel, progress=lambda _: cancel.set())

    results = run(go())

    assert len(results) == 1
    assert len(caller.calls) == 1


def test_stats_log_file(image_dir, tmp_path):
    log_file = tmp_path / "logs" / "stats.jsonl"
    stats = StatsLogger(log_file=log_file)
    caller = FakeCaller({GOOD: ok_response("fine")})
    pipeline = LabelingPipeline(build_engine(single_step_store(GOOD), caller), stats_logger=stats)

    run(pipeline.run(find_images(image_dir)[:2], "g"))

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["ok"] is True
    summary = stats.get_summary()
    assert summary["total_images"] == 2
    assert summary["success_rate"] == "100.0%"


def test_scan_and_find_short(image_dir):
    (image_dir / "img1.txt").write_text("x" * 250, encoding="utf-8")
    (image_dir / "img2.txt").write_text("  short  ", encoding="utf-8")

    scanned = scan_tag_results(image_dir)
    short = find_short_results(scanned, 200)

    assert [r.name for r in scanned] == ["img1.jpg", "img2.png", "IMG3.WEBP", "img10.png"]
    assert [r.text_length for r in scanned] == [250, 5, 0, 0]
    assert [r.name for r in short] == ["img2.png", "IMG3.WEBP", "img10.png"]


def test_retry_short_overwrites_only_successes(image_dir):
    (image_dir / "img1.txt").write_text("x" * 250, encoding="utf-8")
    (image_dir / "img2.txt").write_text("short", encoding="utf-8")
    (image_dir / "img10.txt").write_text("tiny", encoding="utf-8")

    outcomes = iter([ok_response("y" * 220), timeout_error(), ok_response("z" * 210)])
    caller = FakeCaller({GOOD: lambda body: next(outcomes)})
    pipeline = LabelingPipeline(
        build_engine(single_step_store(GOOD), caller),
        PipelineConfig(concurrency=1, auto_retry=False),
    )

    candidates, results = run(retry_short(pipeline, image_dir, "g", 200))

    assert [c.name for c in candidates] == ["img2.png", "IMG3.WEBP", "img10.png"]
    assert [r.ok for r in results] == [True, False, True]
    assert (image_dir / "img1.txt").read_text(encoding="utf-8") == "x" * 250
    assert (image_dir / "img2.txt").read_text(encoding="utf-8") == "y" * 220
    assert not (image_dir / "IMG3.txt").exists()
    assert (image_dir / "img10.txt").read_text(encoding="utf-8") == "z" * 210


def test_retry_short_with_nothing_to_do(image_dir):
    for image in find_images(image_dir):
        tag_text_path(image).write_text("x" * 300, encoding="utf-8")
    caller = FakeCaller()
    pipeline = LabelingPipeline(build_engine(single_step_store(GOOD), caller))

    candidates, results = run(retry_short(pipeline, image_dir, "g", 200))

    assert candidates == [] and results == []
    assert caller.calls == []


def test_non_positive_concurrency_still_labels_everything(image_dir):
    caller = FakeCaller({GOOD: ok_response("fine")})
    pipeline = LabelingPipeline(
        build_engine(single_step_store(GOOD), caller),
        PipelineConfig(concurrency=-1),
    )

    results = run(pipeline.run(find_images(image_dir), "g"))

    assert len(results) == 4
    assert all(result.ok for result in results)
