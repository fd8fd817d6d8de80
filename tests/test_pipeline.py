"""Tests for the two-stage pipeline with a scripted runner."""

from __future__ import annotations

import pytest

from duet import pipeline
from duet.errors import ExitFailure, TimeoutFailure
from duet.pipeline import (
    REVIEW_CODE_INSTRUCTION,
    REVIEW_OUTPUT_INSTRUCTION,
    Generation,
    build_review_prompt,
)
from duet.schemas import Chunk


def chunk(source, content, kind="text"):
    return Chunk(source=source, content=content, timestamp=0, type=kind)


class FakeRunner:
    """Stands in for ``execute_cli``: replays scripted chunks per agent."""

    def __init__(self, script, failures=None):
        self.script = script
        self.failures = failures or {}
        self.calls = []
        self.finished = []

    def __call__(self, cli, agent, prompt, **kwargs):
        self.calls.append((agent, prompt))
        return self._stream(agent)

    async def _stream(self, agent):
        for content, kind in self.script.get(agent, []):
            yield chunk(agent, content, kind)
        if agent in self.failures:
            raise self.failures[agent]
        self.finished.append(agent)


@pytest.fixture
def fake_runner(monkeypatch):
    def _install(script, failures=None):
        runner = FakeRunner(script, failures)
        monkeypatch.setattr(pipeline, "execute_cli", runner)
        return runner

    return _install


async def drain(generation):
    return [c async for c in generation.stream()]


# ── Prompt derivation ───────────────────────────────────────────────────────


class TestBuildReviewPrompt:
    def test_uses_first_code_block_only(self):
        output = "Here you go:\n```py\nprint(1)\n```\nand also\n```py\nprint(2)\n```"
        prompt = build_review_prompt(output)

        assert prompt.startswith(REVIEW_CODE_INSTRUCTION)
        assert prompt.endswith("print(1)")
        assert "Here you go" not in prompt
        assert "print(2)" not in prompt

    def test_falls_back_to_whole_output(self):
        output = "Just prose, no fences.\nSecond line."
        prompt = build_review_prompt(output)

        assert prompt == f"{REVIEW_OUTPUT_INSTRUCTION}\n\n{output}"


# ── Generation ──────────────────────────────────────────────────────────────


class TestGeneration:
    def test_records_user_prompt_before_streaming(self, make_cli, store, fake_runner):
        fake_runner({})
        generation = Generation(make_cli(), store, "write fizzbuzz")

        messages = store.get_messages(generation.conversation_id)
        assert [(m.role, m.content) for m in messages] == [("user", "write fizzbuzz")]

    @pytest.mark.asyncio
    async def test_two_stages_in_order_with_code_prompt(self, make_cli, store, fake_runner):
        runner = fake_runner(
            {
                "gemini": [("Sure:\n```py\n", "text"), ("print(1)\n```\nDone.", "text")],
                "claude": [("Looks fine.", "text")],
            }
        )
        generation = Generation(make_cli(), store, "write it")
        chunks = await drain(generation)

        assert [c.source for c in chunks] == ["gemini", "gemini", "claude"]
        assert [agent for agent, _ in runner.calls] == ["gemini", "claude"]
        assert runner.calls[0][1] == "write it"
        review_prompt = runner.calls[1][1]
        assert review_prompt == f"{REVIEW_CODE_INSTRUCTION}\n\nprint(1)"
        assert "Sure:" not in review_prompt
        assert "Done." not in review_prompt

        messages = store.get_messages(generation.conversation_id)
        assert [m.role for m in messages] == ["user", "gemini", "claude"]
        assert messages[1].content == "Sure:\n```py\nprint(1)\n```\nDone."
        assert messages[1].code_blocks[0].code == "print(1)"
        assert messages[2].content == "Looks fine."
        assert messages[2].code_blocks is None

    @pytest.mark.asyncio
    async def test_no_fences_reviews_whole_output(self, make_cli, store, fake_runner):
        runner = fake_runner(
            {"gemini": [("line one\n", "text"), ("line two", "text")], "claude": []}
        )
        await drain(Generation(make_cli(), store, "explain"))

        assert runner.calls[1][1] == f"{REVIEW_OUTPUT_INSTRUCTION}\n\nline one\nline two"

    @pytest.mark.asyncio
    async def test_error_chunks_excluded_from_review_prompt(self, make_cli, store, fake_runner):
        runner = fake_runner(
            {
                "gemini": [
                    ("Loaded cached credentials.\n", "error"),
                    ("answer", "text"),
                ],
                "claude": [],
            }
        )
        generation = Generation(make_cli(), store, "q")
        chunks = await drain(generation)

        assert chunks[0].type == "error"
        assert runner.calls[1][1] == f"{REVIEW_OUTPUT_INSTRUCTION}\n\nanswer"
        assert store.get_messages(generation.conversation_id)[1].content == "answer"

    @pytest.mark.asyncio
    async def test_skip_review_runs_only_stage_one(self, make_cli, store, fake_runner):
        runner = fake_runner({"gemini": [("```\ncode\n```", "text")]})
        generation = Generation(make_cli(), store, "q", skip_review=True)
        chunks = await drain(generation)

        assert [c.source for c in chunks] == ["gemini"]
        assert [agent for agent, _ in runner.calls] == ["gemini"]
        assert [m.role for m in store.get_messages(generation.conversation_id)] == [
            "user",
            "gemini",
        ]

    @pytest.mark.asyncio
    async def test_stage_one_failure_aborts_pipeline(self, make_cli, store, fake_runner):
        runner = fake_runner(
            {"gemini": [("partial", "text"), ("Process exited with code 2", "error")]},
            failures={"gemini": ExitFailure("gemini", 2)},
        )
        generation = Generation(make_cli(), store, "q")
        chunks = []
        with pytest.raises(ExitFailure) as excinfo:
            async for c in generation.stream():
                chunks.append(c)

        assert excinfo.value.code == 2
        assert [c.content for c in chunks] == ["partial", "Process exited with code 2"]
        assert [agent for agent, _ in runner.calls] == ["gemini"]
        assert [m.role for m in store.get_messages(generation.conversation_id)] == ["user"]

    @pytest.mark.asyncio
    async def test_stage_two_failure_keeps_stage_one_message(self, make_cli, store, fake_runner):
        fake_runner(
            {"gemini": [("ok", "text")], "claude": [("Process timed out after 1s", "error")]},
            failures={"claude": TimeoutFailure("claude", 1.0)},
        )
        generation = Generation(make_cli(), store, "q")
        with pytest.raises(TimeoutFailure):
            await drain(generation)

        assert [m.role for m in store.get_messages(generation.conversation_id)] == [
            "user",
            "gemini",
        ]

    @pytest.mark.asyncio
    async def test_chunks_pass_through_before_stage_finishes(self, make_cli, store, fake_runner):
        runner = fake_runner({"gemini": [("a", "text"), ("b", "text")]})
        stream = Generation(make_cli(), store, "q", skip_review=True).stream()

        first = await stream.__anext__()
        assert first.content == "a"
        assert runner.finished == []

        rest = [c async for c in stream]
        assert [c.content for c in rest] == ["b"]
        assert runner.finished == ["gemini"]
