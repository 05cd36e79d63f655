"""
User matching for payment events.

Strategies run in a fixed order and the first unambiguous hit wins:

1. correlation token issued at checkout (strongest signal)
2. normalized contact phone (E.164)
3. normalized contact email

A strategy that finds nobody falls through to the next one. A strategy that
finds more than one account stops the search: the event is orphaned and left
for an operator, we never pick between candidates. Matching only reads the
directory, so re-running it on an unchanged orphaned event gives the same
answer and batch re-scans are safe.
"""
from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from sqlmodel import Session, select

from seapay.core.config import settings
from seapay.enums import ContactKind, MatchStrategy
from seapay.models import CheckoutToken, UserContact

_NON_DIGITS = re.compile(r"\D+")


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    value = email.strip().lower()
    if "@" not in value:
        return None
    return value


def normalize_phone(phone: str | None, default_country_code: str | None = None) -> str | None:
    """
    Normalize to E.164.

    "+91 8973 297600", "918973297600", "08973297600" and "8973297600" all map
    to "+918973297600" with the default country code 91.
    """
    if not phone:
        return None
    raw = phone.strip()
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return f"+{digits}"
    if raw.startswith("00"):
        return f"+{digits[2:]}" if len(digits) > 2 else None

    cc = default_country_code or settings.DEFAULT_PHONE_COUNTRY_CODE
    national = digits.lstrip("0")
    if len(national) == 10:
        return f"+{cc}{national}"
    if len(digits) > 10:
        return f"+{digits}"
    return None


class UserDirectory(Protocol):
    def lookup_by_correlation_token(self, token: str) -> list[int]: ...

    def lookup_by_phone(self, phone: str) -> list[int]: ...

    def lookup_by_email(self, email: str) -> list[int]: ...


class SqlUserDirectory:
    """UserDirectory backed by the users/user_contacts/checkout_tokens tables."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def lookup_by_correlation_token(self, token: str) -> list[int]:
        rows = self.session.exec(
            select(CheckoutToken.user_id).where(CheckoutToken.token == token)
        ).all()
        return sorted(set(rows))

    def _lookup_contact(self, kind: ContactKind, value: str) -> list[int]:
        rows = self.session.exec(
            select(UserContact.user_id)
            .where(UserContact.kind == kind)
            .where(UserContact.value == value)
        ).all()
        return sorted(set(rows))

    def lookup_by_phone(self, phone: str) -> list[int]:
        return self._lookup_contact(ContactKind.phone, phone)

    def lookup_by_email(self, email: str) -> list[int]:
        return self._lookup_contact(ContactKind.email, email)


@dataclass(frozen=True)
class MatchResult:
    user_id: int | None
    strategy: MatchStrategy | None = None
    candidates: tuple[int, ...] = field(default_factory=tuple)
    ambiguous: bool = False

    @property
    def matched(self) -> bool:
        return self.user_id is not None

    @property
    def reason(self) -> str:
        if self.matched:
            return f"matched by {self.strategy.value}"  # type: ignore[union-attr]
        if self.ambiguous:
            ids = ",".join(str(c) for c in self.candidates)
            return f"ambiguous {self.strategy.value} match: {ids}"  # type: ignore[union-attr]
        return "no user matched"


def match_event(
    directory: UserDirectory,
    *,
    correlation_token: str | None,
    phone: str | None,
    email: str | None,
) -> MatchResult:
    strategies: list[tuple[MatchStrategy, str | None, Callable[[str], list[int]]]] = [
        (MatchStrategy.correlation_token, correlation_token, directory.lookup_by_correlation_token),
        (MatchStrategy.phone, normalize_phone(phone), directory.lookup_by_phone),
        (MatchStrategy.email, normalize_email(email), directory.lookup_by_email),
    ]
    for strategy, value, lookup in strategies:
        if not value:
            continue
        candidates = tuple(sorted(set(lookup(value))))
        if len(candidates) == 1:
            return MatchResult(user_id=candidates[0], strategy=strategy, candidates=candidates)
        if len(candidates) > 1:
            return MatchResult(
                user_id=None, strategy=strategy, candidates=candidates, ambiguous=True
            )
    return MatchResult(user_id=None)
