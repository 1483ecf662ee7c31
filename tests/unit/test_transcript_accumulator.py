# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from transcript.accumulator import TranscriptAccumulator


def test_three_segments_concatenate_through_deltas() -> None:
    acc = TranscriptAccumulator()

    for delta in ("Hello ", "world. "):
        acc.apply_delta(delta)
    acc.apply_segment_completed("Hello world.")

    for delta in ("How ", "are ", "you? "):
        acc.apply_delta(delta)
    acc.apply_segment_completed("How are you?")

    acc.apply_delta("Fine.")
    acc.apply_segment_completed("Fine.")

    assert acc.current() == "Hello world. How are you? Fine."
    assert acc.segment_count == 3

    segments = acc.snapshot().segments
    assert [s.reported for s in segments] == ["Hello world.", "How are you?", "Fine."]
    assert acc.current()[segments[1].start:segments[1].end] == "How are you? "


def test_completed_never_overwrites_accumulated_text() -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("hello there")
    acc.apply_segment_completed("Hello there.")

    assert acc.current() == "hello there"
    assert acc.final_text == "hello there"


def test_completed_seeds_empty_transcript() -> None:
    acc = TranscriptAccumulator()
    acc.apply_segment_completed("Only completed")

    assert acc.current() == "Only completed"


def test_denylisted_delta_is_dropped() -> None:
    acc = TranscriptAccumulator()

    assert acc.apply_delta("Hello") is True
    assert acc.apply_delta(" Transcribe in any language including mixed") is False
    assert acc.current() == "Hello"
    assert acc.filtered_deltas == 1


def test_denylisted_completed_does_not_seed() -> None:
    acc = TranscriptAccumulator()
    acc.apply_segment_completed("Transcribe in any language including mixed language content")

    assert acc.current() == ""


def test_denylist_is_injectable() -> None:
    acc = TranscriptAccumulator(denylist=("thanks for watching",))

    assert acc.apply_delta("Transcribe in any language") is True
    assert acc.apply_delta("Thanks for watching!") is False


def test_empty_delta_is_ignored() -> None:
    acc = TranscriptAccumulator()
    assert acc.apply_delta("") is False


def test_clear_resets_everything() -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("text")
    acc.apply_segment_completed("text")
    acc.clear()

    assert acc.current() == ""
    assert acc.final_text is None
    assert acc.segment_count == 0


@pytest.mark.asyncio
async def test_await_final_resolves_on_completion() -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("one two")

    waiter = asyncio.create_task(acc.await_final(timeout_s=2.0))
    await asyncio.sleep(0)
    acc.apply_segment_completed("One two.")

    assert await waiter == "one two"


@pytest.mark.asyncio
async def test_await_final_timeout_returns_current_text(captured_logs) -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("partial")

    text = await acc.await_final(timeout_s=0.01)

    assert text == "partial"
    assert any(e["event_type"] == "TRANSCRIPT_FINAL_TIMEOUT" for e in captured_logs)


@pytest.mark.asyncio
async def test_force_final_releases_waiter() -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("forced")

    waiter = asyncio.create_task(acc.await_final(timeout_s=10.0))
    await asyncio.sleep(0)
    acc.force_final()

    assert await asyncio.wait_for(waiter, timeout=1.0) == "forced"


@pytest.mark.asyncio
async def test_await_final_returns_immediately_when_segment_already_complete(captured_logs) -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("Hello.")
    acc.apply_segment_completed("Hello.")

    text = await asyncio.wait_for(acc.await_final(timeout_s=10.0), timeout=0.5)

    assert text == "Hello."
    assert not any(e["event_type"] == "TRANSCRIPT_FINAL_TIMEOUT" for e in captured_logs)


@pytest.mark.asyncio
async def test_await_final_waits_for_deltas_after_last_segment(captured_logs) -> None:
    acc = TranscriptAccumulator()
    acc.apply_delta("First.")
    acc.apply_segment_completed("First.")
    acc.apply_delta(" Second")

    text = await acc.await_final(timeout_s=0.01)

    assert text == "First. Second"
    assert any(e["event_type"] == "TRANSCRIPT_FINAL_TIMEOUT" for e in captured_logs)
