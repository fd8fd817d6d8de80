"""Two-stage pipeline — gemini generates, claude reviews.

Stage one's chunks are passed through to the caller as they arrive while its
text output is accumulated. Once stage one has finished cleanly, the review
prompt is derived from that text (the first fenced code block if there is
one, otherwise the whole output) and stage two runs the same way.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import TYPE_CHECKING

from duet.code_parser import extract_first_code, parse_code_blocks
from duet.runner import execute_cli
from duet.schemas import AgentType, Chunk

if TYPE_CHECKING:
    from duet.config import CliConfig
    from duet.conversations import ConversationStore

logger = logging.getLogger(__name__)

REVIEW_CODE_INSTRUCTION = "Review the following code and suggest improvements:"
REVIEW_OUTPUT_INSTRUCTION = "Review the following output and provide feedback:"


def build_review_prompt(output: str) -> str:
    """Build the stage-two prompt from stage one's accumulated text."""
    code = extract_first_code(output)
    if code is not None:
        return f"{REVIEW_CODE_INSTRUCTION}\n\n{code}"
    return f"{REVIEW_OUTPUT_INSTRUCTION}\n\n{output}"


class Generation:
    """One prompt run through the pipeline, bound to a fresh conversation.

    The conversation and the user message are recorded on construction, so
    ``conversation_id`` is known before any process has been started.
    """

    def __init__(
        self,
        cli: CliConfig,
        store: ConversationStore,
        prompt: str,
        *,
        skip_review: bool = False,
    ) -> None:
        self.cli = cli
        self.store = store
        self.prompt = prompt
        self.skip_review = skip_review
        self.conversation_id = store.create_conversation().id
        self.outputs: dict[AgentType, str] = {}
        store.add_message(self.conversation_id, "user", prompt)

    async def stream(self) -> AsyncGenerator[Chunk, None]:
        logger.info(
            f"Starting generation {self.conversation_id} for prompt: {self.prompt[:50]}..."
        )

        async with aclosing(self._run_stage("gemini", self.prompt)) as chunks:
            async for chunk in chunks:
                yield chunk

        if self.skip_review:
            logger.debug("Review skipped by request")
            return

        review_prompt = build_review_prompt(self.outputs["gemini"])
        async with aclosing(self._run_stage("claude", review_prompt)) as chunks:
            async for chunk in chunks:
                yield chunk

        logger.info(f"Generation {self.conversation_id} complete")

    async def _run_stage(
        self, agent: AgentType, prompt: str
    ) -> AsyncGenerator[Chunk, None]:
        """Re-emit one run's chunks and record its text once it succeeds.

        A ``RunFailure`` from the run propagates unchanged and nothing is
        recorded for this stage.
        """
        logger.debug(f"Running {agent} CLI")
        parts: list[str] = []
        async with aclosing(execute_cli(self.cli, agent, prompt)) as chunks:
            async for chunk in chunks:
                if chunk.type == "text":
                    parts.append(chunk.content)
                yield chunk

        text = "".join(parts)
        self.outputs[agent] = text
        self.store.add_message(
            self.conversation_id, agent, text, code_blocks=parse_code_blocks(text)
        )
