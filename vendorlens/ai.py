import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import anthropic

logger = logging.getLogger(__name__)

ORACLE_MODEL = os.getenv("VENDOR_ORACLE_MODEL", "claude-sonnet-4-6")
ORACLE_TIMEOUT = float(os.getenv("VENDOR_ORACLE_TIMEOUT", "30"))

MAX_SOURCES = 3
MAX_TURNS = 4

VENDOR_PROMPT = """\
You are a financial transaction analyst. You will be given a vendor descriptor \
taken from a bank or credit card statement line and must identify the \
consumer-facing BRAND NAME that customers would recognize.

Bank descriptors are often truncated, lowercased, and contain payment processor \
codes, store numbers, or location codes.

Think through this step by step:
1. Identify payment gateway or processor codes (SQ *, PAYPAL *, RAZOR, PAYU, UPI, etc.)
2. Look for business or company identifiers in the descriptor
3. Search the web when the business is not obvious
4. Prefer the popular brand name over the registered legal entity name
5. If it is a payment gateway transaction, identify the underlying merchant

Examples:
- "amzn mktplace us 1a2b3" → "Amazon"
- "bundl technologies" → "Swiggy"
- "sq farmers market brooklyn" → "Farmers Market"
- "paypal netflix com" → "Netflix"

Rules:
- name: Title Case brand name, no store numbers, locations or processor codes
- confidence: 0.0-1.0, how sure you are that the name is correct
- If you cannot identify the business, set name to null

Descriptor: "{vendor_text}"
{context}"""

REPORT_VENDOR_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {
            "type": ["string", "null"],
            "description": "Consumer-facing brand name, or null if unknown",
        },
        "confidence": {
            "type": "number",
            "description": "Confidence in the name between 0.0 and 1.0",
        },
        "reasoning": {
            "type": "string",
            "description": "One-sentence explanation of the identification",
        },
    },
    "required": ["name", "confidence", "reasoning"],
}

WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 3}


@dataclass
class OracleCandidate:
    name: str | None
    confidence: float
    reasoning: str
    sources: list[dict] = field(default_factory=list)

    @property
    def source(self) -> str:
        # Answers backed by web search evidence are attributed as grounded.
        return "google" if self.sources else "llm"


def _context_lines(context: dict | None) -> str:
    if not context:
        return ""
    labels = {"amount": "Transaction Amount", "date": "Transaction Date", "bank_name": "Bank"}
    lines = [
        f"- {label}: {context[key]}"
        for key, label in labels.items()
        if context.get(key)
    ]
    if not lines:
        return ""
    return "Context:\n" + "\n".join(lines)


def _attr(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class VendorOracle:
    def __init__(self):
        self.client = anthropic.Anthropic(timeout=ORACLE_TIMEOUT)

    def _collect_sources(self, content: list) -> list[dict]:
        snippets: dict[str, str] = {}
        for block in content:
            if block.type != "text":
                continue
            for citation in _attr(block, "citations") or []:
                url = _attr(citation, "url")
                if url and url not in snippets:
                    snippets[url] = _attr(citation, "cited_text") or ""

        sources: list[dict] = []
        seen: set[str] = set()
        for block in content:
            if block.type != "web_search_tool_result":
                continue
            results = _attr(block, "content")
            if not isinstance(results, list):
                # Search errors come back as a single error object
                continue
            for result in results:
                url = _attr(result, "url")
                title = _attr(result, "title")
                if not url or not title or url in seen:
                    continue
                seen.add(url)
                sources.append(
                    {
                        "title": title,
                        "url": url,
                        "snippet": snippets.get(url, ""),
                        "publish_date": _attr(result, "page_age"),
                    }
                )
        return sources[:MAX_SOURCES]

    def resolve(self, vendor_text: str, context: dict | None = None) -> OracleCandidate:
        start = time.perf_counter()
        prompt = VENDOR_PROMPT.format(
            vendor_text=vendor_text, context=_context_lines(context)
        )
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        tools = [
            WEB_SEARCH_TOOL,
            {
                "name": "report_vendor",
                "description": "Report the identified brand name for the vendor descriptor",
                "input_schema": REPORT_VENDOR_SCHEMA,
            },
        ]
        sources: list[dict] = []

        for _ in range(MAX_TURNS):
            response = self.client.messages.create(
                model=ORACLE_MODEL,
                max_tokens=1024,
                temperature=0.1,
                tools=tools,
                tool_choice={"type": "any"},
                messages=messages,
            )
            sources.extend(self._collect_sources(response.content))

            for block in response.content:
                if block.type == "tool_use" and block.name == "report_vendor":
                    report = block.input
                    elapsed = time.perf_counter() - start
                    logger.info(
                        "Vendor oracle answered in %.2fs (%d sources)",
                        elapsed,
                        len(sources),
                    )
                    return OracleCandidate(
                        name=report.get("name"),
                        confidence=float(report.get("confidence", 0.5)),
                        reasoning=report.get("reasoning")
                        or "AI-based vendor identification with web search",
                        sources=sources[:MAX_SOURCES],
                    )

            # Server-side search paused the turn, or another tool was called
            if response.stop_reason not in ("tool_use", "pause_turn"):
                raise RuntimeError("Vendor oracle did not call report_vendor")

            messages.append({"role": "assistant", "content": response.content})
            tool_results = [
                {"type": "tool_result", "tool_use_id": b.id, "content": ""}
                for b in response.content
                if b.type == "tool_use"
            ]
            if tool_results:
                messages.append({"role": "user", "content": tool_results})

        raise RuntimeError("Vendor oracle did not call report_vendor")


vendor_oracle = VendorOracle()
