"""
Tests for short-term context management: token counting, model limits,
configuration, sliding window, compression and tool result condensing.
"""

import json
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import (
    AIMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from conftest import make_turns
from langchain_memory.compression import (
    COMPRESS_TOOL_NAME,
    SUMMARY_PREFIX,
    SUMMARY_SUFFIX,
    CompressionEngine,
    format_for_summary,
    is_compression_summary,
)
from langchain_memory.condenser import condense_tool_message, condense_tool_result
from langchain_memory.config import (
    BudgetConfig,
    CompressionConfig,
    MemoryConfig,
    SlidingWindowConfig,
)
from langchain_memory.model_limits import ModelLimitRegistry, base_model_name
from langchain_memory.sliding_window import (
    SlidingWindowEngine,
    pending_tool_call_ids,
    safe_cut_points,
)
from langchain_memory.token_budget import (
    HeuristicTokenizer,
    TiktokenTokenizer,
    TokenCounter,
)
from langchain_memory.types import ConflictStrategy


def _tool_call(call_id: str, name: str = "search") -> AIMessage:
    return AIMessage(content="", tool_calls=[{"id": call_id, "name": name, "args": {"q": "x"}}])


def _assert_tool_pairs_intact(messages: list):
    issued = set()
    for msg in messages:
        if isinstance(msg, AIMessage):
            issued.update(c["id"] for c in msg.tool_calls)
        if isinstance(msg, ToolMessage):
            assert msg.tool_call_id in issued, f"orphan tool result {msg.tool_call_id}"
    assert not pending_tool_call_ids(messages)


# ── Token Counting Tests ──


class TestTokenCounting:
    def test_heuristic_count(self):
        tokenizer = HeuristicTokenizer()
        assert tokenizer.count("") == 0
        assert tokenizer.count("ab") == 1
        assert tokenizer.count("x" * 30) == 10

    def test_heuristic_truncate_and_tail(self):
        tokenizer = HeuristicTokenizer()
        text = "abcdefghijkl"
        assert tokenizer.truncate(text, 2) == "abcdef"
        assert tokenizer.tail(text, 2) == "ghijkl"
        assert tokenizer.truncate(text, 0) == ""

    def test_tiktoken_truncate_uses_encoding(self):
        tokenizer = TiktokenTokenizer()
        # Character-level stand-in so no encoding download is needed
        tokenizer._enc = MagicMock(encode=lambda t: list(t), decode=lambda toks: "".join(toks))
        assert tokenizer.count("hello") == 5
        assert tokenizer.truncate("hello", 2) == "he"
        assert tokenizer.tail("hello", 2) == "lo"
        assert tokenizer.truncate("hi", 5) == "hi"

    def test_message_overhead(self):
        counter = TokenCounter()
        assert counter.count_message(HumanMessage(content="")) == 4
        assert counter.count_message(HumanMessage(content="x" * 30)) == 14

    def test_tool_calls_are_counted(self):
        counter = TokenCounter()
        plain = counter.count_message(AIMessage(content=""))
        with_call = counter.count_message(_tool_call("c1"))
        assert with_call > plain

    def test_content_blocks(self):
        counter = TokenCounter()
        msg = AIMessage(content=[
            {"type": "thinking", "thinking": "Let me think..."},
            {"type": "text", "text": "Here is my answer."},
        ])
        assert counter.count_message(msg) > 4

    def test_count_messages_options(self):
        counter = TokenCounter()
        messages = [SystemMessage(content="x" * 300), HumanMessage(content="y" * 30)]
        total = counter.count_messages(messages)
        assert counter.count_messages(messages, exclude_system=True) == 14
        assert counter.count_messages(messages, start=1) == 14
        assert total == 104 + 14


# ── Model Limit Tests ──


class TestModelLimitRegistry:
    def test_exact_lookup(self):
        registry = ModelLimitRegistry().load()
        assert registry.max_input_tokens("gpt-4o") == 128_000
        assert registry.max_output_tokens("gpt-4o") == 16_384

    def test_provider_prefix_lookup(self):
        registry = ModelLimitRegistry().load(include_builtin=False)
        registry.register("bedrock/my-model", 50_000, 2_000)
        assert registry.max_input_tokens("my-model") == 50_000

    def test_date_suffix_lookup(self):
        registry = ModelLimitRegistry().load()
        assert registry.max_input_tokens("gpt-4o-2024-05-13") == 128_000
        assert registry.max_input_tokens("claude-sonnet-4-5-20250929") == 200_000

    def test_preview_suffix(self):
        assert base_model_name("gpt-4-turbo-preview") == "gpt-4-turbo"
        assert base_model_name("some-model-beta") == "some-model"

    def test_unknown_model_defaults(self):
        registry = ModelLimitRegistry().load()
        assert registry.max_input_tokens("unknown-model") == 128_000
        assert registry.max_output_tokens("unknown-model") == 4096
        assert registry.max_input_tokens(None) == 128_000
        assert not registry.has_model("unknown-model")

    def test_load_litellm_file(self, tmp_path):
        path = tmp_path / "models.json"
        path.write_text(json.dumps({
            "sample_spec": {"max_input_tokens": 1},
            "tiny-model": {"max_input_tokens": 8000, "max_output_tokens": 1000,
                           "litellm_provider": "acme"},
            "old-model": {"max_tokens": 4000},
        }))
        registry = ModelLimitRegistry().load(path, include_builtin=False)
        assert registry.loaded
        assert len(registry) == 2
        assert registry.find("tiny-model").provider == "acme"
        assert registry.max_input_tokens("old-model") == 4000
        assert registry.max_output_tokens("old-model") == 4000

    def test_missing_file_keeps_builtin(self, tmp_path):
        registry = ModelLimitRegistry().load(tmp_path / "missing.json")
        assert registry.has_model("gpt-4o")


# ── Config Tests ──


class TestMemoryConfig:
    def test_default_values(self):
        config = MemoryConfig()
        assert config.context_window == 0
        assert config.sliding_window.max_turns is None
        assert config.sliding_window.trigger_threshold == 0.8
        assert config.compression.keep_recent_turns == 5
        assert config.budget.min_memory_budget == 200
        assert config.conflict.default_strategy == ConflictStrategy.NEWEST_WITH_MERGE

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MEMORY_CONTEXT_WINDOW", "50000")
        monkeypatch.setenv("MEMORY_WINDOW_MAX_TURNS", "8")
        monkeypatch.setenv("MEMORY_ASYNC_EXTRACTION", "false")
        monkeypatch.setenv("MEMORY_CONFLICT_STRATEGY", "newest_wins")
        monkeypatch.setenv("MEMORY_BUDGET_RATIO", "0.25")
        config = MemoryConfig.from_env()
        assert config.context_window == 50000
        assert config.sliding_window.max_turns == 8
        assert config.extraction.async_extraction is False
        assert config.conflict.default_strategy == ConflictStrategy.NEWEST_WINS
        assert config.budget.memory_budget_ratio == 0.25

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            SlidingWindowConfig(trigger_threshold=1.5)
        with pytest.raises(ValueError):
            BudgetConfig(memory_budget_ratio=-0.1)

    def test_get_context_window_explicit(self):
        assert MemoryConfig(context_window=50000).get_context_window() == 50000

    def test_get_context_window_from_model(self):
        config = MemoryConfig(model_name="claude-sonnet-4-5-20250929")
        assert config.get_context_window() == 200_000
        assert MemoryConfig(model_name="unknown-model").get_context_window() == 128_000


# ── Sliding Window Tests ──


class TestSlidingWindow:
    def test_cut_points_skip_pending_tool_calls(self):
        messages = [
            HumanMessage(content="a"),
            _tool_call("c1"),
            HumanMessage(content="interrupt"),
            ToolMessage(content="r", tool_call_id="c1"),
            HumanMessage(content="b"),
        ]
        assert safe_cut_points(messages) == [0, 4]

    def test_eleven_turns_over_limit_of_ten(self):
        engine = SlidingWindowEngine(128_000, SlidingWindowConfig(max_turns=10))
        messages = [SystemMessage(content="You are helpful."), *make_turns(11)]

        assert engine.should_slide(messages)
        result = engine.slide(messages)

        assert len(result) == 21
        assert isinstance(result[0], SystemMessage)
        assert result[1].content == "question 1"
        assert result[-1].content == "answer 10"

    def test_pending_tool_call_blocks_slide(self):
        engine = SlidingWindowEngine(10, SlidingWindowConfig(max_turns=0))
        messages = [
            SystemMessage(content="sys"),
            HumanMessage(content="hi"),
            _tool_call("c1"),
        ]
        assert engine.should_slide(messages) is False

    def test_under_limits_no_slide(self):
        engine = SlidingWindowEngine(128_000, SlidingWindowConfig(max_turns=10))
        assert engine.should_slide(make_turns(5)) is False
        assert engine.should_slide([]) is False

    def test_token_trigger(self):
        engine = SlidingWindowEngine(100)
        messages = make_turns(20)
        assert engine.should_slide(messages)

        no_protection = SlidingWindowEngine(100, SlidingWindowConfig(auto_token_protection=False))
        assert no_protection.should_slide(messages) is False

    def test_token_slide_keeps_tool_pairs(self):
        messages = [SystemMessage(content="sys")]
        for i in range(6):
            messages.extend([
                HumanMessage(content="q" * 300),
                _tool_call(f"c{i}"),
                ToolMessage(content="r" * 300, tool_call_id=f"c{i}"),
                AIMessage(content="done"),
            ])
        engine = SlidingWindowEngine(1000)

        assert engine.should_slide(messages)
        result = engine.slide(messages)

        assert isinstance(result[0], SystemMessage)
        assert isinstance(result[1], HumanMessage)
        assert 1 <= len(safe_cut_points(result)) < 6
        _assert_tool_pairs_intact(result)
        counter = TokenCounter()
        assert counter.count_messages(result, exclude_system=True) <= engine.target_tokens

    def test_keeps_at_least_one_turn(self):
        engine = SlidingWindowEngine(50)
        messages = [HumanMessage(content="x" * 600), AIMessage(content="y" * 600)]
        result = engine.slide(messages)
        assert result == messages

    def test_no_cut_points_unchanged(self):
        engine = SlidingWindowEngine(10, SlidingWindowConfig(max_turns=0))
        messages = [SystemMessage(content="sys"), AIMessage(content="hello")]
        assert engine.slide(messages) == messages

    def test_evicted_messages(self):
        engine = SlidingWindowEngine(128_000, SlidingWindowConfig(max_turns=10))
        messages = make_turns(11)
        evicted = engine.evicted_messages(messages)
        assert [m.content for m in evicted] == ["question 0", "answer 0"]

    def test_input_not_modified(self):
        engine = SlidingWindowEngine(128_000, SlidingWindowConfig(max_turns=2))
        messages = make_turns(5)
        engine.slide(messages)
        assert len(messages) == 10


# ── Compression Tests ──


def _long_turns(count: int, chars: int = 150) -> list:
    messages = []
    for i in range(count):
        messages.append(HumanMessage(content=f"{i}" + "q" * (chars - 1)))
        messages.append(AIMessage(content=f"{i}" + "a" * (chars - 1)))
    return messages


class TestCompression:
    def _llm(self, summary="- User likes espresso"):
        mock_llm = MagicMock()
        mock_llm.invoke.return_value = MagicMock(content=summary)
        return mock_llm

    def test_should_compress(self):
        engine = CompressionEngine(self._llm(), max_context_tokens=1000)
        assert engine.should_compress(800)
        assert not engine.should_compress(799)
        assert not CompressionEngine(None, max_context_tokens=1000).should_compress(10_000)

    def test_compress_replaces_old_turns(self):
        mock_llm = self._llm()
        engine = CompressionEngine(
            mock_llm, max_context_tokens=1000, config=CompressionConfig(keep_recent_turns=2)
        )
        system = SystemMessage(content="You are helpful.")
        conversation = _long_turns(10)
        result = engine.compress([system, *conversation])

        assert result[0] is system
        call = result[1].tool_calls[0]
        assert call["name"] == COMPRESS_TOOL_NAME
        assert call["id"].startswith("memory_compress_")
        assert isinstance(result[2], ToolMessage)
        assert result[2].tool_call_id == call["id"]
        assert result[2].content == SUMMARY_PREFIX + "- User likes espresso" + SUMMARY_SUFFIX
        assert is_compression_summary(result[2])
        assert result[3:] == conversation[14:]
        mock_llm.invoke.assert_called_once()

    def test_compress_is_idempotent_below_threshold(self):
        engine = CompressionEngine(
            self._llm(), max_context_tokens=1000, config=CompressionConfig(keep_recent_turns=2)
        )
        once = engine.compress([SystemMessage(content="sys"), *_long_turns(10)])
        counter = TokenCounter()

        assert not engine.should_compress(counter.count_messages(once))
        assert engine.compress(once) == once

    def test_summary_prompt_lists_tool_calls(self):
        text = format_for_summary([
            SystemMessage(content="ignored"),
            HumanMessage(content="find flights"),
            _tool_call("c1", name="flight_search"),
            ToolMessage(content="3 flights", tool_call_id="c1"),
        ])
        assert "ignored" not in text
        assert "User: find flights" in text
        assert "Assistant: [Called tools: flight_search]" in text
        assert "Tool: 3 flights" in text

    def test_llm_failure_keeps_messages(self):
        mock_llm = MagicMock()
        mock_llm.invoke.side_effect = RuntimeError("provider down")
        engine = CompressionEngine(
            mock_llm, max_context_tokens=1000, config=CompressionConfig(keep_recent_turns=2)
        )
        messages = _long_turns(10)
        assert engine.compress(messages) == messages

    def test_blank_summary_keeps_messages(self):
        engine = CompressionEngine(
            self._llm("   "), max_context_tokens=1000, config=CompressionConfig(keep_recent_turns=2)
        )
        messages = _long_turns(10)
        assert engine.compress(messages) == messages

    def test_too_few_messages(self):
        mock_llm = self._llm()
        engine = CompressionEngine(mock_llm, max_context_tokens=100)
        messages = [SystemMessage(content="s" * 600), HumanMessage(content="x" * 600)]
        assert engine.compress(messages) == messages
        mock_llm.invoke.assert_not_called()

    def test_no_user_message(self):
        engine = CompressionEngine(self._llm(), max_context_tokens=100)
        messages = [AIMessage(content="a" * 600), AIMessage(content="b" * 600)]
        assert engine.compress(messages) == messages

    def test_recent_turns_over_threshold_keep_active_chain(self):
        engine = CompressionEngine(
            self._llm(), max_context_tokens=1000, config=CompressionConfig(keep_recent_turns=1)
        )
        early = _long_turns(2, chars=30)
        last_user = HumanMessage(content="c" * 600)
        chain = [_tool_call("c1"), ToolMessage(content="d" * 3000, tool_call_id="c1")]

        result = engine.compress([*early, last_user, *chain])

        assert result[0].tool_calls[0]["name"] == COMPRESS_TOOL_NAME
        assert result[2] is last_user
        assert result[3:] == chain
        _assert_tool_pairs_intact(result)

    def test_summary_target_bounds(self):
        assert CompressionEngine(None, max_context_tokens=1000).summary_target_tokens == 500
        assert CompressionEngine(None, max_context_tokens=20_000).summary_target_tokens == 2000
        assert CompressionEngine(None, max_context_tokens=200_000).summary_target_tokens == 4000


# ── Tool Result Condenser Tests ──


class TestToolResultCondenser:
    def test_short_result_unchanged(self, tmp_path):
        config = CompressionConfig(tool_result_dir=tmp_path)
        assert condense_tool_result("bash", "ok", "s1", config) == "ok"
        assert condense_tool_result("bash", "", "s1", config) == ""

    def test_long_result_saved_to_file(self, tmp_path):
        config = CompressionConfig(
            max_tool_result_tokens=100,
            tool_result_head_tokens=5,
            tool_result_tail_tokens=5,
            tool_result_dir=tmp_path,
        )
        content = "HEAD" + "x" * 1000 + "TAIL"
        result = condense_tool_result("web/search", content, "s1", config)

        assert result.startswith("[Tool result truncated - full content saved to file]")
        assert "HEAD" in result and "TAIL" in result
        files = list((tmp_path / "s1").iterdir())
        assert len(files) == 1
        assert files[0].name.startswith("web_search_")
        assert files[0].read_text(encoding="utf-8") == content
        assert str(files[0]) in result

    def test_unwritable_dir_keeps_original(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config = CompressionConfig(max_tool_result_tokens=10, tool_result_dir=blocker)
        content = "x" * 1000
        assert condense_tool_result("bash", content, "s1", config) == content

    def test_condense_tool_message(self, tmp_path):
        config = CompressionConfig(max_tool_result_tokens=10, tool_result_dir=tmp_path)
        msg = ToolMessage(content="x" * 1000, tool_call_id="c1", name="bash")
        condensed = condense_tool_message(msg, "s1", config)
        assert condensed.tool_call_id == "c1"
        assert "truncated" in condensed.content

        short = ToolMessage(content="ok", tool_call_id="c2", name="bash")
        assert condense_tool_message(short, "s1", config) is short
