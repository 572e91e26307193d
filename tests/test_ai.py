"""Unit tests for the vendor oracle in vendorlens/ai.py.

All tests mock client.messages.create so no real Anthropic API calls are made.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from vendorlens.ai import MAX_SOURCES, OracleCandidate, VendorOracle, _context_lines

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_use_block(name: str, input_data: dict) -> MagicMock:
    block = MagicMock()
    block.type = "tool_use"
    block.name = name
    block.input = input_data
    block.id = "tu_123"
    return block


def _text_block(text: str, citations=None) -> SimpleNamespace:
    return SimpleNamespace(type="text", text=text, citations=citations)


def _search_block(results) -> SimpleNamespace:
    return SimpleNamespace(type="web_search_tool_result", content=results)


def _result(url: str, title: str, page_age=None) -> SimpleNamespace:
    return SimpleNamespace(
        type="web_search_result", url=url, title=title, page_age=page_age
    )


def _response(content: list, stop_reason: str = "tool_use") -> MagicMock:
    resp = MagicMock()
    resp.content = content
    resp.stop_reason = stop_reason
    return resp


def _make_oracle() -> VendorOracle:
    oracle = VendorOracle.__new__(VendorOracle)
    oracle.client = MagicMock()
    return oracle


def _report(name="Amazon", confidence=0.92, reasoning="Amazon marketplace"):
    return _tool_use_block(
        "report_vendor",
        {"name": name, "confidence": confidence, "reasoning": reasoning},
    )


# ---------------------------------------------------------------------------
# VendorOracle.resolve
# ---------------------------------------------------------------------------


class TestVendorOracle:
    def test_resolve_returns_candidate(self):
        oracle = _make_oracle()
        oracle.client.messages.create.return_value = _response([_report()])

        candidate = oracle.resolve("amzn mktplace us 1a2b3")

        assert candidate == OracleCandidate(
            name="Amazon", confidence=0.92, reasoning="Amazon marketplace"
        )
        assert candidate.source == "llm"
        kwargs = oracle.client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "any"}
        assert {t["name"] for t in kwargs["tools"]} == {"web_search", "report_vendor"}
        assert "amzn mktplace us 1a2b3" in kwargs["messages"][0]["content"]

    def test_null_name_passed_through(self):
        oracle = _make_oracle()
        oracle.client.messages.create.return_value = _response(
            [_report(name=None, confidence=0.1, reasoning="Unknown")]
        )
        candidate = oracle.resolve("xjq 99812")
        assert candidate.name is None

    def test_context_in_prompt(self):
        oracle = _make_oracle()
        oracle.client.messages.create.return_value = _response([_report()])
        oracle.resolve("amzn", {"amount": "-12.50", "bank_name": "Chase"})
        prompt = oracle.client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "Transaction Amount: -12.50" in prompt
        assert "Bank: Chase" in prompt
        assert "Transaction Date" not in prompt

    def test_grounded_answer_collects_sources(self):
        oracle = _make_oracle()
        search = _search_block(
            [
                _result("https://www.swiggy.com", "Swiggy", "2 days ago"),
                _result("https://en.wikipedia.org/wiki/Swiggy", "Swiggy - Wikipedia"),
                _result("https://www.swiggy.com", "Swiggy duplicate"),
            ]
        )
        text = _text_block(
            "Bundl Technologies operates Swiggy.",
            citations=[
                SimpleNamespace(
                    url="https://www.swiggy.com",
                    cited_text="Swiggy is operated by Bundl Technologies",
                )
            ],
        )
        oracle.client.messages.create.return_value = _response(
            [search, text, _report(name="Swiggy", confidence=0.9)]
        )

        candidate = oracle.resolve("bundl technologies")

        assert candidate.source == "google"
        assert candidate.sources == [
            {
                "title": "Swiggy",
                "url": "https://www.swiggy.com",
                "snippet": "Swiggy is operated by Bundl Technologies",
                "publish_date": "2 days ago",
            },
            {
                "title": "Swiggy - Wikipedia",
                "url": "https://en.wikipedia.org/wiki/Swiggy",
                "snippet": "",
                "publish_date": None,
            },
        ]

    def test_sources_capped(self):
        oracle = _make_oracle()
        search = _search_block(
            [_result(f"https://example.com/{i}", f"Result {i}") for i in range(6)]
        )
        oracle.client.messages.create.return_value = _response([search, _report()])
        candidate = oracle.resolve("amzn")
        assert len(candidate.sources) == MAX_SOURCES

    def test_search_error_ignored(self):
        oracle = _make_oracle()
        error = _search_block(
            SimpleNamespace(type="web_search_tool_result_error", error_code="unavailable")
        )
        oracle.client.messages.create.return_value = _response([error, _report()])
        candidate = oracle.resolve("amzn")
        assert candidate.sources == []
        assert candidate.source == "llm"

    def test_pause_turn_continues(self):
        oracle = _make_oracle()
        paused = _response(
            [_search_block([_result("https://amazon.com", "Amazon")])],
            stop_reason="pause_turn",
        )
        oracle.client.messages.create.side_effect = [paused, _response([_report()])]

        candidate = oracle.resolve("amzn")

        assert candidate.name == "Amazon"
        assert candidate.source == "google"
        assert oracle.client.messages.create.call_count == 2
        second = oracle.client.messages.create.call_args_list[1].kwargs["messages"]
        assert second[1]["role"] == "assistant"

    def test_other_tool_gets_result_and_continues(self):
        oracle = _make_oracle()
        stray = _tool_use_block("something_else", {})
        oracle.client.messages.create.side_effect = [
            _response([stray]),
            _response([_report()]),
        ]
        oracle.resolve("amzn")
        messages = oracle.client.messages.create.call_args_list[1].kwargs["messages"]
        assert messages[-1]["content"][0]["tool_use_id"] == "tu_123"

    def test_end_turn_without_report_raises(self):
        oracle = _make_oracle()
        oracle.client.messages.create.return_value = _response(
            [_text_block("I am not sure.")], stop_reason="end_turn"
        )
        with pytest.raises(RuntimeError):
            oracle.resolve("amzn")

    def test_gives_up_after_max_turns(self):
        oracle = _make_oracle()
        oracle.client.messages.create.return_value = _response(
            [], stop_reason="pause_turn"
        )
        with pytest.raises(RuntimeError):
            oracle.resolve("amzn")

    def test_api_error_propagates(self):
        oracle = _make_oracle()
        oracle.client.messages.create.side_effect = ConnectionError("down")
        with pytest.raises(ConnectionError):
            oracle.resolve("amzn")


class TestContextLines:
    def test_empty(self):
        assert _context_lines(None) == ""
        assert _context_lines({}) == ""
        assert _context_lines({"amount": None}) == ""

    def test_lines(self):
        assert _context_lines({"date": "2024-03-01"}) == (
            "Context:\n- Transaction Date: 2024-03-01"
        )
