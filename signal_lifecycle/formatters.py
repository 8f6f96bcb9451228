from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from .models import BUY, WIN, Signal


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None or val <= 0:
        return "-"
    return f"{val:g}"


def _side(signal: Signal) -> str:
    return "BUY" if signal.direction == BUY else "SELL"


def format_opened(signal: Signal, parse_mode: str = "HTML") -> str:
    """Alert text for a freshly opened signal."""
    parse_mode = (parse_mode or "HTML").upper()
    source = "ADMIN" if signal.source == "admin" else "AUTO"
    pipe = "\\|" if parse_mode == "MARKDOWNV2" else "|"
    lines = [
        f"{_bold(signal.pair, parse_mode)}  {pipe}  {_bold(f'{signal.timeframe}m', parse_mode)}",
        f"{_bold(f'NEW {_side(signal)}', parse_mode)} {_escape_text(f'({source}) confidence {signal.confidence:.0f}%', parse_mode)}",
        "",
        _escape_text(f"Entry (UTC): {_fmt_ms(signal.entry_time_ms)}", parse_mode),
        _escape_text(f"Expiry (UTC): {_fmt_ms(signal.expiry_ms)}", parse_mode),
        _escape_text(f"Reference: {_fmt_price(signal.entry_price)}", parse_mode),
    ]
    if signal.factors:
        lines.append(_escape_text("Factors: " + ", ".join(signal.factors), parse_mode))
    return "\n".join(lines)


def format_resolved(signal: Signal, parse_mode: str = "HTML") -> str:
    parse_mode = (parse_mode or "HTML").upper()
    outcome = "WIN" if signal.result == WIN else "LOSS"
    pl = signal.profit_loss if signal.profit_loss is not None else 0.0
    lines = [
        f"{_bold(f'{outcome}', parse_mode)} {_escape_text(f'{signal.pair} {_side(signal)} {signal.timeframe}m', parse_mode)}",
        _escape_text(f"Entry: {_fmt_price(signal.entry_price)} at {_fmt_ms(signal.entry_time_ms)} UTC", parse_mode),
        _escape_text(f"Move: {pl:.4f}%", parse_mode),
    ]
    return "\n".join(lines)


def format_error(app_name: str, message: str, parse_mode: str = "HTML") -> str:
    parse_mode = (parse_mode or "HTML").upper()
    return f"{_bold(app_name, parse_mode)}: {_escape_text(message, parse_mode)}"
