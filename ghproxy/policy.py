"""Allow/deny list access policy.

Both lists hold identifier *prefixes*: an entry of ``"alice"`` matches
the identity ``"alice-org"`` as well as ``"alice"``. An empty allow
list admits everyone; an empty deny list blocks nobody.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ghproxy.errors import AccessDenied, DenyReason


def matches_any_prefix(identity: str, prefixes: Sequence[str]) -> bool:
    return any(identity.startswith(prefix) for prefix in prefixes)


class AccessPolicy(BaseModel):
    """Pydantic model for the access list document.

    The on-disk keys are ``whiteList`` and ``blackList``; ``allow`` and
    ``deny`` are accepted too.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    allow: Tuple[str, ...] = Field(default=(), alias="whiteList")
    """Identifier prefixes that are admitted. Empty means unrestricted."""

    deny: Tuple[str, ...] = Field(default=(), alias="blackList")
    """Identifier prefixes that are refused."""

    @field_validator("allow", "deny", mode="before")
    @classmethod
    def _null_is_empty(cls, value):
        return () if value is None else value

    def check(self, captures: Optional[Sequence[str]]) -> None:
        """Raise ``AccessDenied`` unless the identity is admitted.

        Args:
            captures: Identity captures from the pattern matcher. The
                first element is the identity; ``None`` or an empty
                sequence means the URL matched no upstream shape.

        Raises:
            AccessDenied: ``NOT_ALLOWED`` when missing from a non-empty
                allow list (or unmatched), ``BLOCKED`` when a deny entry
                is a prefix of the identity.
        """
        if not captures:
            raise AccessDenied(DenyReason.NOT_ALLOWED)
        identity = captures[0]
        if self.allow and not matches_any_prefix(identity, self.allow):
            raise AccessDenied(DenyReason.NOT_ALLOWED, identity)
        if self.deny and matches_any_prefix(identity, self.deny):
            raise AccessDenied(DenyReason.BLOCKED, identity)

    def admit(self, captures: Optional[Sequence[str]]) -> bool:
        try:
            self.check(captures)
        except AccessDenied:
            return False
        return True
