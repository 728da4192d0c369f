"""Target filters: IMAP search criteria and client-side match predicates."""

from __future__ import annotations

import email.utils
from collections.abc import Sequence
from dataclasses import dataclass

from .config import FilterConfig
from .errors import ConfigurationError


@dataclass(frozen=True)
class TargetFilter:
    """Configured subject substrings and sender addresses.

    Built once at startup and never mutated.
    """

    subjects: tuple[str, ...]
    addresses: tuple[str, ...]

    @classmethod
    def from_config(cls, config: FilterConfig) -> TargetFilter:
        return cls(subjects=tuple(config.subjects), addresses=tuple(config.addresses))

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` if either list is empty."""
        if not self.subjects:
            raise ConfigurationError("no target subjects configured (TARGET_EMAIL_SUBJECTS)")
        if not self.addresses:
            raise ConfigurationError("no target addresses configured (TARGET_EMAIL_ADDRESSES)")

    def matches(self, sender: str, subject: str) -> bool:
        return sender_matches(sender, self.addresses) and subject_matches(subject, self.subjects)


def build_search_query(addresses: Sequence[str]) -> list:
    """Build IMAPClient search criteria for unseen mail from *addresses*.

    Multiple addresses are combined with IMAP's binary ``OR``, chained
    left to right.  With no addresses the query degrades to a bare
    ``UNSEEN``; callers must always supply at least one address in
    production.
    """
    if not addresses:
        return ["UNSEEN"]
    if len(addresses) == 1:
        return ["UNSEEN", "FROM", addresses[0]]

    combined: list = ["FROM", addresses[0]]
    for address in addresses[1:]:
        combined = ["OR", combined, ["FROM", address]]
    return ["UNSEEN", combined]


def subject_matches(candidate: str, targets: Sequence[str]) -> bool:
    """Bidirectional case-insensitive substring match.

    True if the candidate contains a target, or a target contains the
    candidate (tolerates truncated subject lines).
    """
    candidate = candidate.strip().lower()
    if not candidate:
        return False
    for target in targets:
        target = target.strip().lower()
        if not target:
            continue
        if target in candidate or candidate in target:
            return True
    return False


def sender_matches(sender: str, addresses: Sequence[str]) -> bool:
    """True if an address in the decoded ``From`` header equals a configured one.

    Only the addr-spec is compared, case-insensitively; display names and
    look-alike domains do not count.
    """
    wanted = {address.strip().lower() for address in addresses if address.strip()}
    if not wanted:
        return False
    return any(
        addr.strip().lower() in wanted
        for _name, addr in email.utils.getaddresses([sender])
        if addr
    )
