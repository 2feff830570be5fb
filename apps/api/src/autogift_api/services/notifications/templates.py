"""Email templates for gift pipeline events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Sequence


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _format_currency(amount: Decimal | float | int | None, currency: str) -> str:
    symbols = {"USD": "$", "EUR": "€", "GBP": "£"}
    numeric = f"{float(amount or 0):.2f}"
    symbol = symbols.get(currency.upper(), "")
    return f"{symbol}{numeric}" if symbol else f"{numeric} {currency.upper()}"


def _format_date(value: date | datetime | None) -> str:
    if value is None:
        return "soon"
    return value.strftime("%B %d, %Y").replace(" 0", " ")


def _occasion_label(occasion: str) -> str:
    return occasion.replace("_", " ").title()


def _greeting(name: str | None) -> str:
    return f"Hi {name or 'there'},"


def _wrap_html(paragraphs: Sequence[str]) -> str:
    body = "\n".join(f"    <p>{paragraph}</p>" for paragraph in paragraphs)
    return f"<html>\n  <body>\n{body}\n  </body>\n</html>"


def _render(subject: str, lines: Sequence[str]) -> RenderedTemplate:
    text_lines = [*lines, "", "Thanks,", "The AutoGift Team"]
    html_lines = [html.escape(line) for line in lines if line] + ["Thanks,<br />The AutoGift Team"]
    return RenderedTemplate(subject=subject, text_body="\n".join(text_lines), html_body=_wrap_html(html_lines))


def render_gift_reminder(
    *,
    owner_name: str | None,
    recipient_name: str,
    occasion: str,
    event_date: date,
    candidates: Sequence[Mapping[str, Any]],
    currency: str,
    approval_url: str | None,
) -> RenderedTemplate:
    label = _occasion_label(occasion)
    lines = [
        _greeting(owner_name),
        "",
        f"{recipient_name}'s {label} is on {_format_date(event_date)}.",
    ]
    if candidates:
        lines.append("Here are a few gift ideas within your budget:")
        for candidate in candidates:
            lines.append(f"- {candidate.get('title')} ({_format_currency(candidate.get('price'), currency)})")
    else:
        lines.append("We couldn't find gift ideas within your budget yet. We'll keep looking.")
    if approval_url:
        lines.extend(["", f"Review and approve the gift: {approval_url}"])
    return _render(f"Upcoming {label} for {recipient_name}", lines)


def render_gift_rejected(
    *,
    owner_name: str | None,
    recipient_name: str,
    occasion: str,
    reason: str | None,
) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"You declined the auto-gift for {recipient_name}'s {_occasion_label(occasion)}. No payment was taken.",
    ]
    if reason:
        lines.append(f"Reason recorded: {reason}")
    return _render(f"Auto-gift for {recipient_name} cancelled", lines)


def render_address_request(
    *,
    recipient_name: str | None,
    sender_name: str | None,
    occasion: str,
    collection_url: str,
    expires_at: datetime,
) -> RenderedTemplate:
    lines = [
        _greeting(recipient_name),
        "",
        f"{sender_name or 'Someone special'} is sending you a gift for your {_occasion_label(occasion)}.",
        "Tell us where to ship it:",
        collection_url,
        f"This link expires on {_format_date(expires_at)}.",
    ]
    return _render("You have a gift on the way", lines)


def render_address_received(*, owner_name: str | None, recipient_name: str) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"{recipient_name} shared a shipping address. We're placing the gift order now.",
    ]
    return _render(f"{recipient_name} shared their address", lines)


def render_address_expired(*, owner_name: str | None, recipient_name: str) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"{recipient_name} didn't share a shipping address in time, so the gift was not sent.",
    ]
    return _render(f"Gift for {recipient_name} could not be sent", lines)


def render_payment_retrying(
    *,
    owner_name: str | None,
    recipient_name: str,
    amount: Decimal,
    currency: str,
    next_retry_at: datetime,
    attempts_remaining: int,
) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"We couldn't authorize {_format_currency(amount, currency)} for the gift to {recipient_name}.",
        f"We'll try again automatically on {_format_date(next_retry_at)} ({attempts_remaining} attempts left).",
        "You can update your payment method before then to avoid a delay.",
    ]
    return _render(f"Payment issue with your gift for {recipient_name}", lines)


def render_payment_failed(
    *,
    owner_name: str | None,
    recipient_name: str,
    reason: str | None,
) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"We weren't able to charge your payment method for the gift to {recipient_name}.",
        "Please update your payment method and approve the gift again.",
    ]
    if reason:
        lines.append(f"Details: {reason}")
    return _render("Action needed: update your payment method", lines)


def render_order_scheduled(
    *,
    owner_name: str | None,
    recipient_name: str,
    order_number: str,
    total: Decimal,
    currency: str,
    delivery_date: date | None,
    hold_until: date | None,
) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"Your gift for {recipient_name} is confirmed as order {order_number} "
        f"({_format_currency(total, currency)}).",
    ]
    if hold_until:
        lines.append(f"We'll ship it on {_format_date(hold_until)} so it arrives by {_format_date(delivery_date)}.")
    else:
        lines.append(f"It's on its way to arrive by {_format_date(delivery_date)}.")
    return _render(f"Gift order {order_number} confirmed", lines)


def render_order_attention(
    *,
    owner_name: str | None,
    order_number: str,
    stage: str,
    reason: str,
) -> RenderedTemplate:
    lines = [
        _greeting(owner_name),
        "",
        f"Your gift order {order_number} needs attention during {stage.replace('_', ' ')}.",
        f"Details: {reason}",
        "Our team has been notified. You may need to update your payment method.",
    ]
    return _render(f"Gift order {order_number} needs attention", lines)


__all__ = [
    "RenderedTemplate",
    "render_address_expired",
    "render_address_received",
    "render_address_request",
    "render_gift_rejected",
    "render_gift_reminder",
    "render_order_attention",
    "render_order_scheduled",
    "render_payment_failed",
    "render_payment_retrying",
]
