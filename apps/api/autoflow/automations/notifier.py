from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from autoflow.automations.enums import Channel
from autoflow.automations.schemas import EntitySnapshot, MessageRule


logger = logging.getLogger("autoflow.automations.notifier")

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class MessageBody:
    subject: str | None
    text: str
    placeholders: dict[str, str] = field(default_factory=dict)


class Notifier(Protocol):
    def send_message(self, channel: str, recipient: str, body: MessageBody, attachments: list[str]) -> None:
        ...


class LoggingNotifier:
    """Default transport: records the message in the log instead of delivering it."""

    def send_message(self, channel: str, recipient: str, body: MessageBody, attachments: list[str]) -> None:
        logger.info(
            "notifier.message_logged",
            extra={"channel": channel, "status": "logged", "reason": f"attachments={len(attachments)}"},
        )


def normalize_us_mobile(mobile: str | None) -> str | None:
    if not mobile:
        return None
    digits = _NON_DIGITS.sub("", mobile)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) == 10 else None


def is_valid_us_mobile(mobile: str | None) -> bool:
    return normalize_us_mobile(mobile) is not None


def _placeholders(entity: EntitySnapshot) -> dict[str, str]:
    return {
        "client": entity.client_name or "",
        "email": entity.client_email or "",
        "phone": entity.client_mobile or "",
    }


def send_rule_message(notifier: Notifier, rule: MessageRule, entity: EntitySnapshot) -> list[str]:
    """Send the rule's message on each configured leg; returns the legs actually sent."""
    channel = Channel(rule.channel)
    placeholders = _placeholders(entity)
    sent: list[str] = []

    if channel in {Channel.EMAIL, Channel.BOTH}:
        if entity.client_email:
            notifier.send_message(
                Channel.EMAIL.value,
                entity.client_email,
                MessageBody(subject=rule.subject, text=rule.email_body or "", placeholders=placeholders),
                list(rule.attachment_urls),
            )
            sent.append(Channel.EMAIL.value)
        else:
            logger.warning(
                "notifier.recipient_missing",
                extra={"channel": Channel.EMAIL.value, "rule_id": rule.id, "entity_ref": str(entity.ref)},
            )

    if channel in {Channel.SMS, Channel.BOTH}:
        mobile = normalize_us_mobile(entity.client_mobile)
        if mobile is not None:
            notifier.send_message(
                Channel.SMS.value,
                mobile,
                MessageBody(subject=None, text=rule.sms_body or "", placeholders=placeholders),
                list(rule.attachment_urls),
            )
            sent.append(Channel.SMS.value)
        else:
            logger.warning(
                "notifier.invalid_mobile",
                extra={"channel": Channel.SMS.value, "rule_id": rule.id, "entity_ref": str(entity.ref)},
            )

    return sent
