import asyncio

from tokenstrom.config import PacingConfig
from tokenstrom.fallback import DemoStreamGenerator, paced_deltas
from tokenstrom.models import Delta


class _FakeSession:
    def __init__(self) -> None:
        self.token_count = 0

    def next_delta(self, kind, text) -> Delta:
        self.token_count += 1
        return Delta(kind=kind, text=text, sequence=self.token_count)


def _collect(agen) -> list[Delta]:
    async def run() -> list[Delta]:
        return [delta async for delta in agen]

    return asyncio.run(run())


def test_paced_deltas_emit_one_character_each() -> None:
    deltas = _collect(paced_deltas(_FakeSession(), "content", "abc", 0))

    assert [(d.text, d.sequence) for d in deltas] == [("a", 1), ("b", 2), ("c", 3)]


def test_demo_stream_is_reasoning_then_content() -> None:
    pacing = PacingConfig(demo_reasoning_ms=0, demo_content_ms=0, demo_section_pause_ms=0)
    generator = DemoStreamGenerator(pacing)

    deltas = _collect(generator.stream(_FakeSession(), "Why is the sky blue?"))

    reasoning = "".join(d.text for d in deltas if d.kind == "reasoning")
    content = "".join(d.text for d in deltas if d.kind == "content")
    assert reasoning == DemoStreamGenerator.reasoning_text("Why is the sky blue?")
    assert content == DemoStreamGenerator.content_text("Why is the sky blue?")
    first_content = next(i for i, d in enumerate(deltas) if d.kind == "content")
    assert all(d.kind == "content" for d in deltas[first_content:])


def test_demo_text_quotes_query_and_handles_blank_and_long_input() -> None:
    assert '"Why?"' in DemoStreamGenerator.content_text("  Why?\n")
    assert "your request" in DemoStreamGenerator.content_text("   ")

    long_text = DemoStreamGenerator.content_text("word " * 100)
    assert "..." in long_text
    assert ("word " * 100).strip() not in long_text


def test_demo_usage_counts_query_and_content_characters() -> None:
    generator = DemoStreamGenerator(PacingConfig())
    usage = generator.usage("abc")

    assert usage.prompt_tokens == 3
    assert usage.completion_tokens == len(DemoStreamGenerator.content_text("abc"))
    assert usage.total_tokens == usage.prompt_tokens + usage.completion_tokens
