from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from taskdeck.config import Settings
from taskdeck.logging import get_logger
from taskdeck.service.errors import (
    InvalidCredentials,
    PersistenceError,
    Unauthenticated,
    ValidationError,
)
from taskdeck.service.identity import FederatedClaims, GoogleIdentityVerifier
from taskdeck.service.tokens import IssuedToken, TokenClaims, TokenService
from taskdeck.storage.errors import ConstraintViolation
from taskdeck.storage.models import User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
UNUSABLE_PASSWORD_ALGO = "unusable"
DUPLICATE_EMAIL_MESSAGE = "The email has already been taken."


class AuthStore(Protocol):
    def create_user(
        self,
        name: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        google_id: Optional[str] = None,
        google_avatar_url: Optional[str] = None,
        auth_provider: str = "local",
        email_verified_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...


@dataclass
class AuthContext:
    """Request-scoped principal produced by the gateway dependency."""

    user_id: str
    user: User
    token: str
    claims: TokenClaims


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Password credentials, Google federation and account reconciliation."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        identity: GoogleIdentityVerifier,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.identity = identity
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = PASSWORD_ALGO
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _unusable_password(self) -> Tuple[str, str]:
        # the algo marker makes verify_password reject this row
        digest = self._pwd_hasher.hash(secrets.token_urlsafe(64))
        return digest, UNUSABLE_PASSWORD_ALGO

    def _verify_against_dummy(self, password: str) -> None:
        # unknown accounts pay the same argon2 cost as a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(32))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            digest, new_algo = self._hash_password(password)
            self.store.save_password(user_id, digest, new_algo)
            self.logger.info("password_rehashed", user_id=user_id)
        return True

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # local accounts
    def verify_credentials(self, email: str, password: str) -> User:
        """Return the user owning ``email`` if ``password`` matches.

        Unknown emails and wrong passwords raise the same
        ``InvalidCredentials`` so callers cannot probe for accounts.
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self._verify_against_dummy(password or "")
            raise InvalidCredentials("Unauthorized")
        if not self.verify_password(user.id, password or ""):
            raise InvalidCredentials("Unauthorized")
        return user

    def register(self, name: str, email: str, password: str) -> tuple[User, IssuedToken]:
        if not self.settings.allow_signup:
            raise ValidationError(
                "signup disabled", detail={"email": ["Registration is closed."]}
            )
        normalized = normalize_email(email)
        if self.store.get_user_by_email(normalized):
            raise ValidationError(
                DUPLICATE_EMAIL_MESSAGE, detail={"email": [DUPLICATE_EMAIL_MESSAGE]}
            )
        digest, algo = self._hash_password(password)
        try:
            user = self.store.create_user(
                name.strip(),
                normalized,
                password_hash=digest,
                password_algo=algo,
                auth_provider="local",
            )
        except ConstraintViolation as exc:
            # lost a race against a concurrent registration
            self.logger.warning("register_constraint_violation", field=exc.field)
            raise ValidationError(
                DUPLICATE_EMAIL_MESSAGE, detail={"email": [DUPLICATE_EMAIL_MESSAGE]}
            ) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user, self.tokens.issue(user)

    def login(self, email: str, password: str) -> tuple[User, IssuedToken]:
        user = self.verify_credentials(email, password)
        self.logger.info("user_logged_in", user_id=user.id, provider="local")
        return user, self.tokens.issue(user)

    # federation
    def reconcile_identity(
        self, claims: FederatedClaims, provider: str = "google"
    ) -> User:
        """Map a verified federated identity onto exactly one user row.

        An existing row matched by ``google_id`` or email is linked in place
        (name and password untouched); otherwise a row is created with an
        unusable password. A uniqueness race is retried once.
        """
        last_error: Optional[ConstraintViolation] = None
        for attempt in range(2):
            try:
                return self._reconcile_once(claims, provider)
            except ConstraintViolation as exc:
                self.logger.warning(
                    "reconcile_constraint_violation",
                    attempt=attempt + 1,
                    field=exc.field,
                )
                last_error = exc
            except Exception as exc:
                self.logger.error("reconcile_storage_failed", error=str(exc))
                raise PersistenceError("could not persist federated account") from exc
        raise PersistenceError(
            "could not persist federated account",
            detail={"field": last_error.field if last_error else None},
        ) from last_error

    def _reconcile_once(self, claims: FederatedClaims, provider: str) -> User:
        email = normalize_email(claims.email)
        user = self.store.get_user_by_google_id(claims.subject)
        if user is None:
            user = self.store.get_user_by_email(email)
        now = utcnow()
        if user is not None:
            updated = self.store.update_user(
                user.id,
                google_id=claims.subject,
                google_avatar_url=claims.picture,
                auth_provider=provider,
                email_verified_at=now,
            )
            if updated is None:
                # deleted between lookup and update; treat like a lost race
                raise ConstraintViolation("user vanished during reconcile", {"user_id": user.id})
            self.logger.info("federated_account_linked", user_id=updated.id, provider=provider)
            return updated
        digest, algo = self._unusable_password()
        created = self.store.create_user(
            claims.name or email.split("@", 1)[0],
            email,
            password_hash=digest,
            password_algo=algo,
            google_id=claims.subject,
            google_avatar_url=claims.picture,
            auth_provider=provider,
            email_verified_at=now,
        )
        self.logger.info("federated_account_created", user_id=created.id, provider=provider)
        return created

    async def login_with_google(self, assertion: str) -> tuple[User, IssuedToken]:
        claims = await self.identity.verify(assertion)
        user = self.reconcile_identity(claims, provider="google")
        self.logger.info("user_logged_in", user_id=user.id, provider="google")
        return user, self.tokens.issue(user)

    # profile
    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        profile_image_url: Optional[str] = None,
    ) -> User:
        fields: dict[str, Any] = {}
        if name is not None:
            fields["name"] = name.strip()
        if email is not None:
            normalized = normalize_email(email)
            existing = self.store.get_user_by_email(normalized)
            if existing and existing.id != user_id:
                raise ValidationError(
                    DUPLICATE_EMAIL_MESSAGE, detail={"email": [DUPLICATE_EMAIL_MESSAGE]}
                )
            fields["email"] = normalized
        if profile_image_url is not None:
            fields["profile_image_url"] = profile_image_url or None
        current = self.store.get_user(user_id)
        if current is None:
            raise ValidationError("user not found")
        if not fields:
            return current
        try:
            updated = self.store.update_user(user_id, **fields)
        except ConstraintViolation as exc:
            raise ValidationError(
                DUPLICATE_EMAIL_MESSAGE, detail={"email": [DUPLICATE_EMAIL_MESSAGE]}
            ) from exc
        if updated is None:
            raise ValidationError("user not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(fields))
        return updated

    # gateway
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization`` header into a request-scoped principal.

        Raises ``Unauthenticated`` when no bearer is present; token failures
        surface as its ``TokenExpired``/``TokenMalformed``/``UserNotFound``
        subclasses.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise Unauthenticated("missing bearer token")
        user, claims = await self.tokens.resolve_user(token)
        return AuthContext(user_id=user.id, user=user, token=token, claims=claims)

    async def logout(self, token: str) -> bool:
        revoked = await self.tokens.invalidate(token)
        self.logger.info("user_logged_out", revoked=revoked)
        return revoked
