"""Identity types and the reserved default identity.

The DefaultAccount is the credential-less actor used whenever no account
session exists. Its id is a reserved constant; branch on
:func:`is_default_identity` rather than comparing strings.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

DEFAULT_IDENTITY_ID = "1"  # reserved, never issued by the auth backend


def is_default_identity(identity_id: Optional[str]) -> bool:
    """True for the DefaultAccount (and for a missing id).

    >>> is_default_identity("1")
    True
    >>> is_default_identity("b7c1e0")
    False
    >>> is_default_identity(None)
    True
    """
    return not identity_id or identity_id == DEFAULT_IDENTITY_ID


class IdentityKind(str, Enum):
    ACCOUNT = "account"
    DEFAULT = "default"


class Identity(BaseModel):
    """The active actor. Exactly one is active per process."""

    id: str
    kind: IdentityKind = IdentityKind.ACCOUNT
    email: str = ""
    is_guardian: bool = False

    @classmethod
    def default(cls) -> "Identity":
        """The DefaultAccount.

        >>> Identity.default().is_default
        True
        """
        return cls(id=DEFAULT_IDENTITY_ID, kind=IdentityKind.DEFAULT)

    @property
    def is_default(self) -> bool:
        return self.kind == IdentityKind.DEFAULT or is_default_identity(self.id)


class Subject(BaseModel, frozen=True):
    """Whose data is being read or written.

    ``profile_id == 0`` means the identity itself, not one of its profiles.

    >>> Subject(identity_id="abc").is_profile
    False
    >>> Subject(identity_id="abc", profile_id=2).account()
    Subject(identity_id='abc', profile_id=0)
    """

    identity_id: str
    profile_id: int = 0

    @property
    def is_profile(self) -> bool:
        return self.profile_id > 0

    def account(self) -> "Subject":
        """The owning identity's own subject."""
        return Subject(identity_id=self.identity_id)

    @classmethod
    def default(cls) -> "Subject":
        return cls(identity_id=DEFAULT_IDENTITY_ID)


class IdentityChange(BaseModel):
    """Published by the session manager whenever the active identity changes.

    ``reason`` is one of ``restore``, ``login``, ``logout`` or ``delete``.
    ``first_on_device`` is set when the identity had no local rows before.
    """

    previous: Identity
    current: Identity
    reason: str
    first_on_device: bool = False
