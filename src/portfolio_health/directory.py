from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from .models import CandidateType, DirectoryUser, MatchConfidence, MatchMethod

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_SUFFIX_RE = re.compile(r"\s*\([^()]*\)\s*$")


def normalize_key(value: object) -> str:
    return _WHITESPACE_RE.sub(" ", str(value or "")).strip().casefold()


def infer_candidate_type(value: str) -> CandidateType:
    raw = str(value or "")
    if "@" in raw and "." in raw:
        return CandidateType.EMAIL
    return CandidateType.NAME


def strip_display_suffix(display_name: str) -> str:
    """``"Jones, Jeff (J)"`` -> ``"Jones, Jeff"``."""
    return _TRAILING_SUFFIX_RE.sub("", str(display_name or "")).strip()


def default_aliases(user: DirectoryUser) -> List[str]:
    aliases: List[str] = []
    given = str(user.given_name or "").strip()
    surname = str(user.surname or "").strip()
    if given and surname:
        aliases.append(f"{surname}, {given}")
        aliases.append(f"{given} {surname}")
    stripped = strip_display_suffix(user.display_name)
    if stripped and stripped != user.display_name:
        aliases.append(stripped)
    if user.mail:
        aliases.append(user.mail)
    if user.employee_id:
        aliases.append(user.employee_id)
    return aliases


class AliasResolver:
    """Normalized key -> target ids; a key with several targets is ambiguous."""

    def __init__(self) -> None:
        self._targets: Dict[str, Set[str]] = {}

    def add(self, key: object, target_id: str) -> None:
        normalized = normalize_key(key)
        if not normalized:
            return
        self._targets.setdefault(normalized, set()).add(str(target_id))

    def lookup(self, key: object) -> Optional[str]:
        targets = self._targets.get(normalize_key(key), set())
        if len(targets) == 1:
            return next(iter(targets))
        return None

    def is_ambiguous(self, key: object) -> bool:
        return len(self._targets.get(normalize_key(key), set())) > 1

    def __contains__(self, key: object) -> bool:
        return normalize_key(key) in self._targets

    def __len__(self) -> int:
        return len(self._targets)


@dataclass(frozen=True)
class MatchResult:
    candidate: str
    candidate_type: CandidateType
    matched: bool
    directory_id: Optional[str] = None
    confidence: MatchConfidence = MatchConfidence.NO_MATCH
    method: MatchMethod = MatchMethod.NONE
    explanation: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "candidate": self.candidate,
            "candidate_type": self.candidate_type.value,
            "matched": self.matched,
            "directory_id": self.directory_id,
            "confidence": self.confidence.value,
            "method": self.method.value,
            "explanation": self.explanation,
        }


class DirectoryIndex:
    def __init__(self, users: Iterable[DirectoryUser] = (), aliases: Optional[Dict[str, str]] = None):
        self._users: Dict[str, DirectoryUser] = {}
        self._upn = AliasResolver()
        self._mail = AliasResolver()
        self._display = AliasResolver()
        self._aliases = AliasResolver()
        for user in users:
            self.add_user(user)
        for alias, directory_id in (aliases or {}).items():
            self.add_alias(alias, directory_id)

    def add_user(self, user: DirectoryUser) -> None:
        self._users[user.directory_id] = user
        self._upn.add(user.user_principal_name, user.directory_id)
        self._mail.add(user.mail, user.directory_id)
        self._display.add(user.display_name, user.directory_id)
        for alias in list(user.aliases) + default_aliases(user):
            self._aliases.add(alias, user.directory_id)

    def add_alias(self, alias: str, directory_id: str) -> None:
        if directory_id not in self._users:
            raise ValueError(f"unknown directory id for alias {alias!r}: {directory_id}")
        self._aliases.add(alias, directory_id)

    def get(self, directory_id: str) -> Optional[DirectoryUser]:
        return self._users.get(directory_id)

    def __len__(self) -> int:
        return len(self._users)

    def resolve(self, candidate: str, candidate_type: CandidateType | None = None) -> MatchResult:
        raw = str(candidate or "")
        kind = CandidateType.parse(candidate_type) if candidate_type is not None else infer_candidate_type(raw)
        if not normalize_key(raw):
            return MatchResult(candidate=raw, candidate_type=kind, matched=False, explanation="blank candidate")

        steps = (
            (self._upn, MatchConfidence.EXACT, MatchMethod.EXACT_UPN, "user principal name"),
            (self._mail, MatchConfidence.EXACT, MatchMethod.EXACT_EMAIL, "mail"),
            (self._display, MatchConfidence.HIGH, MatchMethod.DISPLAY_NAME_EXACT, "display name"),
            (self._aliases, MatchConfidence.HIGH, MatchMethod.EXACT_ALIAS, "alias"),
        )
        for resolver, confidence, method, label in steps:
            directory_id = resolver.lookup(raw)
            if directory_id is not None:
                logger.debug("resolved %r via %s -> %s", raw, label, directory_id)
                return MatchResult(
                    candidate=raw,
                    candidate_type=kind,
                    matched=True,
                    directory_id=directory_id,
                    confidence=confidence,
                    method=method,
                    explanation=f"exact {label} match",
                )
            if resolver.is_ambiguous(raw):
                # weaker evidence never breaks a tie at a stronger step
                logger.debug("ambiguous %s for %r", label, raw)
                return MatchResult(
                    candidate=raw, candidate_type=kind, matched=False, explanation=f"ambiguous {label}"
                )

        return MatchResult(candidate=raw, candidate_type=kind, matched=False, explanation="no directory match")
