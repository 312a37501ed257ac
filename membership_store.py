"""
Membership Store - library users and their credentials.
"""

import hmac
import logging

from sqlalchemy import delete, exists, func, or_, select

from database_models import Loan, OUTSTANDING_STATUSES, User, UserRole
from library_errors import ErrorKind, Result
import validators

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {'username', 'credential', 'role', 'email', 'phone'}


def is_admin_actor(actor):
    """Capability check for callers that pass the acting User as the actor."""
    return actor is not None and getattr(actor, 'role', None) == UserRole.ADMIN


class MembershipStore:

    def __init__(self, database, capability_check=None):
        self.database = database
        self.capability_check = capability_check

    def _authorized(self, actor):
        return self.capability_check is None or bool(self.capability_check(actor))

    def _validate_fields(self, fields):
        if 'username' in fields and not validators.is_valid_username(fields['username']):
            return "username must be 3-20 letters, digits or underscores"
        if 'credential' in fields and not validators.is_not_empty(fields['credential']):
            return "credential cannot be empty"
        if fields.get('email') and not validators.is_valid_email(fields['email']):
            return f"invalid email: {fields['email']}"
        if fields.get('phone') and not validators.is_valid_phone(fields['phone']):
            return f"invalid phone number: {fields['phone']}"
        if 'role' in fields and not isinstance(fields['role'], UserRole):
            return f"invalid role: {fields['role']!r}"
        return None

    def create(self, username, credential, role=UserRole.MEMBER, email=None, phone=None, actor=None):
        if not self._authorized(actor):
            logger.warning(f"Refused user creation for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")

        problem = self._validate_fields({'username': username, 'credential': credential,
                                         'role': role, 'email': email, 'phone': phone})
        if problem:
            return Result.failure(ErrorKind.INVALID_INPUT, problem)

        username = username.strip()
        with self.database.session_scope() as session:
            if session.scalar(select(User.user_id).where(User.username == username)) is not None:
                return Result.failure(ErrorKind.DUPLICATE, f"username {username} is taken")

            user = User(username=username, credential=credential, role=role,
                        email=email or None, phone=phone or None)
            session.add(user)
            session.flush()
            user_id = user.user_id

        logger.info(f"Created {role.value} user {user_id}: {username}")
        return Result.success(user_id)

    def get_by_id(self, user_id):
        with self.database.session_scope() as session:
            return session.get(User, user_id)

    def get_by_username(self, username):
        with self.database.session_scope() as session:
            return session.scalar(select(User).where(User.username == username))

    def list(self):
        with self.database.session_scope() as session:
            return list(session.scalars(select(User).order_by(User.created_at.desc(), User.user_id.desc())).all())

    def search(self, term):
        pattern = f"%{term.strip()}%"
        stmt = (select(User)
                .where(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
                .order_by(User.username))
        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def exists(self, user_id, session=None, lock=False):
        """Check a user id; with a session and lock=True the row stays locked until that transaction ends."""
        stmt = select(User.user_id).where(User.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        if session is not None:
            return session.scalar(stmt) is not None
        with self.database.session_scope() as session:
            return session.scalar(stmt) is not None

    def username_exists(self, username):
        with self.database.session_scope() as session:
            count = session.scalar(select(func.count(User.user_id)).where(User.username == username))
        return count > 0

    def update(self, user_id, actor=None, **changes):
        if not self._authorized(actor):
            logger.warning(f"Refused update of user {user_id} for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            return Result.failure(ErrorKind.INVALID_INPUT, f"unknown fields: {sorted(unknown)}")
        problem = self._validate_fields(changes)
        if problem:
            return Result.failure(ErrorKind.INVALID_INPUT, problem)
        if 'username' in changes:
            changes['username'] = changes['username'].strip()

        with self.database.session_scope() as session:
            user = session.get(User, user_id)
            if user is None:
                return Result.failure(ErrorKind.NOT_FOUND, f"user {user_id} not found")

            username = changes.get('username')
            if username and username != user.username:
                taken = session.scalar(select(User.user_id).where(User.username == username))
                if taken is not None:
                    return Result.failure(ErrorKind.DUPLICATE, f"username {username} is taken")

            for field, value in changes.items():
                setattr(user, field, value)

        logger.info(f"Updated user {user_id}")
        return Result.success(user_id)

    def delete(self, user_id, actor=None):
        """Remove a user who holds no outstanding loans.

        The loan check is part of the DELETE statement itself, so a loan
        issued concurrently either lands before it (and blocks the delete)
        or finds the user gone.
        """
        if not self._authorized(actor):
            logger.warning(f"Refused deletion of user {user_id} for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")

        has_loans = exists().where(Loan.user_id == user_id, Loan.status.in_(OUTSTANDING_STATUSES))
        with self.database.session_scope() as session:
            deleted = session.execute(
                delete(User)
                .where(User.user_id == user_id, ~has_loans)
                .execution_options(synchronize_session=False)
            ).rowcount
            if deleted == 0:
                if session.get(User, user_id) is None:
                    return Result.failure(ErrorKind.NOT_FOUND, f"user {user_id} not found")
                logger.warning(f"Refused deletion of user {user_id}: outstanding loans")
                return Result.failure(ErrorKind.HAS_ACTIVE_LOANS, f"user {user_id} has outstanding loans")

        logger.info(f"Deleted user {user_id}")
        return Result.success(user_id)

    def authenticate(self, username, credential):
        """Return the user when the supplied credential matches the stored one."""
        if not username or credential is None:
            return None
        user = self.get_by_username(username.strip())
        if user is None:
            logger.warning(f"Authentication failed: unknown user {username}")
            return None
        if not hmac.compare_digest(str(user.credential).encode('utf-8'), str(credential).encode('utf-8')):
            logger.warning(f"Authentication failed for {username}")
            return None
        return user
