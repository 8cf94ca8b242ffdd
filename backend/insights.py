"""
Spending insights generated by a language model.

Builds a compact per-habit summary of recent spending, asks the model for a
JSON array of insights, and parses the reply into InsightDraft records. The
caller owns persistence and quota accounting.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

INSIGHT_TYPES = {"pattern", "suggestion", "prediction", "celebration"}
INSIGHT_TTL = timedelta(days=7)
MAX_TITLE_LENGTH = 50
RECENT_ENTRY_LIMIT = 10
DEFAULT_MODEL = "claude-sonnet-4-20250514"

PROMPT_TEMPLATE = """You are a financial wellness assistant helping users understand their spending habits. Analyze the following spending data and provide actionable insights.

User's spending data:
{data}

Generate 3-5 insights in the following categories:
1. PATTERN: Identify spending patterns (e.g., "You spend 40% more on Mondays")
2. SUGGESTION: Actionable money-saving tips (e.g., "Making coffee at home could save $50/month")
3. PREDICTION: Forecast based on current habits (e.g., "At this rate, you'll spend $X this year on coffee")
4. CELEBRATION: Positive reinforcement for any improvements or good habits

Format your response as a JSON array with objects containing:
- type: "pattern" | "suggestion" | "prediction" | "celebration"
- title: A short, engaging title (max 50 chars)
- content: The insight details (2-3 sentences)

Respond ONLY with the JSON array, no other text."""


class InsightProviderUnavailable(RuntimeError):
    """Raised when the language model cannot be reached or refuses the call."""


class InsightReplyError(RuntimeError):
    """Raised when the model reply is not a usable list of insights."""


@dataclass(frozen=True)
class SpendingEntry:
    amount: Decimal
    date: datetime
    notes: str | None = None


@dataclass(frozen=True)
class HabitSpending:
    habit_name: str
    category: str
    entries: Sequence[SpendingEntry]


@dataclass(frozen=True)
class InsightDraft:
    type: str
    title: str
    content: str


@dataclass
class AnthropicInsightProvider:
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    max_tokens: int = 1024
    timeout_seconds: int = 30

    def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise InsightProviderUnavailable("ANTHROPIC_API_KEY is not configured")

        body = json.dumps(
            {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            }
        ).encode("utf-8")
        request = Request(
            f"{self.base_url}/v1/messages",
            data=body,
            method="POST",
            headers={
                "content-type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": self.api_version,
            },
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise InsightProviderUnavailable("Language model API unavailable") from exc

        content = payload.get("content")
        if not isinstance(content, list) or not content:
            raise InsightProviderUnavailable("Language model response missing content")
        first = content[0]
        if not isinstance(first, dict) or first.get("type") != "text":
            return ""
        return first.get("text", "")


def provider_from_env() -> AnthropicInsightProvider:
    return AnthropicInsightProvider(
        api_key=os.getenv("ANTHROPIC_API_KEY"),
        model=os.getenv("INSIGHTS_MODEL", DEFAULT_MODEL),
    )


def build_spending_summary(spending: Iterable[HabitSpending]) -> List[dict]:
    summary: List[dict] = []
    for habit in spending:
        amounts = [_coerce_amount(entry.amount) for entry in habit.entries]
        total = sum(amounts, Decimal("0"))
        average = total / len(amounts) if amounts else Decimal("0")
        summary.append(
            {
                "habit": habit.habit_name,
                "category": habit.category,
                "totalSpent": str(total),
                "entryCount": len(amounts),
                "averageAmount": str(average.quantize(Decimal("0.01"))),
                "recentEntries": [
                    {
                        "amount": str(_coerce_amount(entry.amount)),
                        "date": entry.date.date().isoformat(),
                        "dayOfWeek": entry.date.strftime("%A"),
                    }
                    for entry in list(habit.entries)[:RECENT_ENTRY_LIMIT]
                ],
            }
        )
    return summary


def build_insight_prompt(summary: List[dict]) -> str:
    return PROMPT_TEMPLATE.format(data=json.dumps(summary, indent=2))


def parse_insight_reply(text: str) -> List[InsightDraft]:
    cleaned = _strip_code_fence(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise InsightReplyError("Insight reply is not valid JSON") from exc
    if not isinstance(payload, list):
        raise InsightReplyError("Insight reply must be a JSON array")

    drafts: List[InsightDraft] = []
    for item in payload:
        if not isinstance(item, dict):
            raise InsightReplyError("Each insight must be a JSON object")
        insight_type = str(item.get("type", "")).strip().lower()
        title = str(item.get("title", "")).strip()
        content = str(item.get("content", "")).strip()
        if insight_type not in INSIGHT_TYPES:
            raise InsightReplyError(f"Unsupported insight type: {insight_type!r}")
        if not title or not content:
            raise InsightReplyError("Insight title and content are required")
        drafts.append(
            InsightDraft(
                type=insight_type,
                title=title[:MAX_TITLE_LENGTH],
                content=content,
            )
        )
    return drafts


def generate_insights(
    spending: Iterable[HabitSpending],
    provider: AnthropicInsightProvider,
) -> List[InsightDraft]:
    summary = build_spending_summary(spending)
    prompt = build_insight_prompt(summary)
    reply = provider.complete(prompt)
    drafts = parse_insight_reply(reply)
    logger.info("Generated %d insights from %d habits", len(drafts), len(summary))
    return drafts


def has_spending_data(spending: Sequence[HabitSpending]) -> bool:
    return any(habit.entries for habit in spending)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
