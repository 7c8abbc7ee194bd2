# wavebooks/services/matching.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from flask import current_app

from wavebooks.models import Client, Provider
from wavebooks.services.errors import MalformedPhoneError
from wavebooks.services.wave_client import ExternalTransaction
from wavebooks.utils.phones import phone_suffix


@dataclass(frozen=True)
class Candidate:
    kind: str  # "client" | "provider"
    id: int
    name: str
    phone: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "phone": self.phone}


@dataclass(frozen=True)
class MatchResult:
    sender_mobile: Optional[str]
    clients: list[Candidate] = field(default_factory=list)
    providers: list[Candidate] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.clients) + len(self.providers)

    @property
    def is_conflict(self) -> bool:
        return self.total > 1

    @property
    def suggestion(self) -> Optional[Candidate]:
        if self.total != 1:
            return None
        return (self.clients or self.providers)[0]

    def candidates_payload(self) -> dict:
        """Shape stored on a conflicting assignment."""
        return {
            "sender_mobile": self.sender_mobile,
            "clients": [c.to_dict() for c in self.clients],
            "providers": [p.to_dict() for p in self.providers],
        }

    def to_dict(self) -> dict:
        suggestion = self.suggestion
        return {
            **self.candidates_payload(),
            "total": self.total,
            "is_conflict": self.is_conflict,
            "suggestion": ({"kind": suggestion.kind, **suggestion.to_dict()} if suggestion else None),
        }


def _matching(model, user_id: int, suffix: str) -> list:
    rows = (
        model.query.filter(
            model.user_id == user_id,
            model.phone_digits.like(f"%{suffix}"),
        )
        .order_by(model.name.asc(), model.id.asc())
        .all()
    )
    return [r for r in rows if (r.phone_digits or "").endswith(suffix)]


def match(user_id: int, transaction: ExternalTransaction) -> MatchResult:
    """
    Clients and providers whose phone number ends with the same digits as
    the transaction's counterparty mobile.

    Only the last PHONE_MATCH_DIGITS digits are compared, so "+225 07 00 00
    00 00" and "0700000000" are the same number.
    """
    mobile = (transaction.counterparty_mobile or "").strip()
    if not mobile:
        return MatchResult(sender_mobile=None)

    length = current_app.config.get("PHONE_MATCH_DIGITS", 8)
    suffix = phone_suffix(mobile, length)
    if suffix is None:
        current_app.logger.warning(
            "Transaction %s has a malformed counterparty mobile %r", transaction.id, mobile
        )
        raise MalformedPhoneError(
            f"Counterparty mobile has fewer than {length} digits.",
            details={"transaction_id": transaction.id, "mobile": mobile},
        )

    clients = [Candidate("client", c.id, c.name, c.phone) for c in _matching(Client, user_id, suffix)]
    providers = [Candidate("provider", p.id, p.name, p.phone) for p in _matching(Provider, user_id, suffix)]
    return MatchResult(sender_mobile=mobile, clients=clients, providers=providers)
