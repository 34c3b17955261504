"""
Message formatting for Telegram delivery.

Pure functions: a work item goes in, transport-ready text comes out. No I/O,
no clock reads, so formatting the same item twice yields identical bytes.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from signalrelay.core.config import SUPPORTED_PARSE_MODES
from signalrelay.core.exceptions import ConfigurationError, ValidationError
from signalrelay.core.models import ItemKind, WorkItem

DISCLAIMER = "Not financial advice. Trade at your own risk."
NOT_AVAILABLE = "N/A"

CATEGORY_LABELS = {
    "premium": "Premium",
    "free": "Free",
    "news": "News",
}

_MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")
_MARKDOWN_LEGACY_SPECIAL = re.compile(r"([_*`\[])")
_MARKDOWN_V2_URL_SPECIAL = re.compile(r"([)\\])")


def escape_markdown(value: Any, parse_mode: str = "MarkdownV2") -> str:
    """Escape free text for the given Telegram parse mode."""
    text = "" if value is None else str(value)
    if parse_mode == "MarkdownV2":
        return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", text)
    if parse_mode == "Markdown":
        return _MARKDOWN_LEGACY_SPECIAL.sub(r"\\\1", text)
    raise ConfigurationError(f"Unsupported parse mode: {parse_mode}", details={"parse_mode": parse_mode})


def _escape_url(url: str, parse_mode: str) -> str:
    if parse_mode == "MarkdownV2":
        return _MARKDOWN_V2_URL_SPECIAL.sub(r"\\\1", url)
    return url


def _first(payload: Dict[str, Any], *keys: str) -> Optional[Any]:
    """First present, non-empty value among ``keys``."""
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _or_na(value: Optional[Any]) -> Any:
    return NOT_AVAILABLE if value is None else value


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%Y-%m-%d %H:%M UTC")


def direction_label(signal_type: Optional[str]) -> str:
    if signal_type == "LONG":
        return "BUY (LONG)"
    if signal_type == "SHORT":
        return "SELL (SHORT)"
    return signal_type or "HOLD"


def _risk_reward(value: Any) -> str:
    try:
        return f"{float(value):.2f} : 1"
    except (TypeError, ValueError):
        return f"{value} : 1"


# ---------------------------------------------------------------------- #
# Validation
# ---------------------------------------------------------------------- #


def validate_signal(item: WorkItem) -> None:
    """
    Check the minimum payload needed to publish a signal.

    Raises:
        ValidationError: If the entry price is missing
    """
    if _first(item.payload, "entry_price", "entry") is None:
        raise ValidationError(
            "Signal has no entry price", details={"item_id": item.id, "missing": ["entry_price"]}
        )


def validate_news(item: WorkItem) -> None:
    """
    Check the minimum payload needed to publish a news item.

    Raises:
        ValidationError: If both title and summary are missing
    """
    if _first(item.payload, "title", "summary") is None:
        raise ValidationError(
            "News item has neither title nor summary",
            details={"item_id": item.id, "missing": ["title", "summary"]},
        )


def validate_item(item: WorkItem) -> None:
    if item.kind == ItemKind.NEWS.value:
        validate_news(item)
    else:
        validate_signal(item)


# ---------------------------------------------------------------------- #
# Rendering
# ---------------------------------------------------------------------- #


def format_signal_message(item: WorkItem, parse_mode: str = "MarkdownV2") -> str:
    """Render a trading signal; required lines always present, optional ones only if set."""

    def esc(value: Any) -> str:
        return escape_markdown(value, parse_mode)

    payload = item.payload
    market = str(payload.get("market_type") or "").upper() or "MARKET"
    category_label = CATEGORY_LABELS.get(item.category, str(item.category).title())

    lines: List[str] = [
        f"🔔 *NEW {esc(market)} SIGNAL*",
        f"*Tier:* {esc(category_label)}",
        f"*Pair:* {esc(_or_na(_first(payload, 'pair')))}",
        f"*Direction:* {esc(direction_label(payload.get('signal_type')))}",
        f"*Entry:* {esc(_or_na(_first(payload, 'entry_price', 'entry')))}",
        f"*Stop Loss:* {esc(_or_na(_first(payload, 'stop_loss', 'stop')))}",
        f"*Take Profit:* {esc(_or_na(_first(payload, 'take_profit', 'take')))}",
    ]

    confidence = payload.get("confidence_level")
    if confidence is not None:
        lines.append(f"*Confidence:* {esc(confidence)}%")

    risk_reward = payload.get("risk_reward_ratio")
    if risk_reward is not None:
        lines.append(f"*Risk–Reward:* {esc(_risk_reward(risk_reward))}")

    reasoning = payload.get("reasoning")
    if reasoning:
        lines.extend(["", f"*Reasoning:* {esc(reasoning)}"])

    warnings = payload.get("validation_warnings")
    if isinstance(warnings, list) and warnings:
        lines.extend(["", "*Warnings:*"])
        lines.extend(f"• {esc(w)}" for w in warnings)

    generated = _timestamp(item.generated_at)
    expires = _timestamp(item.expires_at)
    if generated or expires:
        lines.append("")
        if generated:
            lines.append(f"*Generated:* {esc(generated)}")
        if expires:
            lines.append(f"*Expires:* {esc(expires)}")

    lines.extend(["", f"_{esc(DISCLAIMER)}_"])
    return "\n".join(lines)


def format_news_message(item: WorkItem, parse_mode: str = "MarkdownV2") -> str:
    """Render a news update."""

    def esc(value: Any) -> str:
        return escape_markdown(value, parse_mode)

    payload = item.payload
    lines: List[str] = [f"📰 *{esc(_first(payload, 'title') or 'News Update')}*"]

    summary = payload.get("summary")
    if summary:
        lines.append(esc(summary))

    source = _first(payload, "source", "provider")
    if source:
        lines.extend(["", f"*Source:* {esc(source)}"])

    url = payload.get("url")
    if url:
        lines.append(f"[Read more]({_escape_url(str(url), parse_mode)})")

    generated = _timestamp(item.generated_at)
    if generated:
        lines.extend(["", f"_{esc(generated)}_"])

    return "\n".join(lines)


class MessageFormatter:
    """Validates and renders work items for one parse mode."""

    def __init__(self, parse_mode: str = "MarkdownV2"):
        if parse_mode not in SUPPORTED_PARSE_MODES:
            raise ConfigurationError(
                f"Unsupported parse mode: {parse_mode}", details={"parse_mode": parse_mode}
            )
        self.parse_mode = parse_mode

    def validate(self, item: WorkItem) -> None:
        validate_item(item)

    def format(self, item: WorkItem) -> str:
        if item.kind == ItemKind.NEWS.value:
            return format_news_message(item, self.parse_mode)
        return format_signal_message(item, self.parse_mode)
