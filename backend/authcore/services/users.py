"""User Store: the relational side the credential protocol talks to.

Only what the auth core needs lives here: lookups, creation (with the default
organization), password replacement and the atomic token-version bump.
"""
from typing import List, Optional, Protocol

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.core.errors import Conflict
from authcore.models.organization import Membership, MembershipRole, Organization
from authcore.models.user import User


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class UserStore(Protocol):
    def find_by_id(self, user_id: int) -> Optional[User]: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def create(self, email: str, hashed_password: str) -> User: ...

    def increment_token_version(self, user_id: int) -> Optional[int]: ...

    def update_password_hash(self, user_id: int, hashed_password: str) -> Optional[int]: ...

    def mark_email_verified(self, user_id: int) -> None: ...


class SqlAlchemyUserStore:
    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.db.get(User, int(user_id))

    def find_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        return self.db.query(User).filter(func.lower(User.email) == email).first()

    def create(self, email: str, hashed_password: str) -> User:
        """
        Create the user, a personal organization and the OWNER membership in
        one transaction. Raises Conflict on a duplicate email (including the
        race where two signups pass the existence check together).
        """
        email = normalize_email(email)
        user = User(email=email, hashed_password=hashed_password, token_version=0)
        org = Organization(name=f"{email}'s Org")
        self.db.add(user)
        self.db.add(org)
        try:
            self.db.flush()
            self.db.add(Membership(user_id=user.id, organization_id=org.id, role=MembershipRole.OWNER))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict()
        self.db.refresh(user)
        return user

    def _bump(self, user_id: int, **values) -> Optional[int]:
        # Single UPDATE ... SET token_version = token_version + 1; no read-modify-write.
        result = self.db.execute(
            update(User)
            .where(User.id == int(user_id))
            .values(token_version=User.token_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if not result.rowcount:
            return None
        user = self.db.get(User, int(user_id))
        self.db.refresh(user)
        return int(user.token_version)

    def increment_token_version(self, user_id: int) -> Optional[int]:
        """Returns the new version, or None if the user no longer exists."""
        return self._bump(user_id)

    def update_password_hash(self, user_id: int, hashed_password: str) -> Optional[int]:
        """Replace the hash and invalidate every outstanding token in the same statement."""
        return self._bump(user_id, hashed_password=hashed_password)

    def mark_email_verified(self, user_id: int) -> None:
        self.db.execute(
            update(User)
            .where(User.id == int(user_id))
            .values(email_verified=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def memberships_for(self, user_id: int) -> List[Membership]:
        return (
            self.db.query(Membership)
            .filter(Membership.user_id == int(user_id))
            .order_by(Membership.created_at.asc(), Membership.id.asc())
            .all()
        )

    def membership(self, user_id: int, organization_id: int) -> Optional[Membership]:
        return (
            self.db.query(Membership)
            .filter(Membership.user_id == int(user_id), Membership.organization_id == int(organization_id))
            .first()
        )
