from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, NoReturn, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from rbacauth.config import Settings
from rbacauth.logging import get_logger
from rbacauth.service.audit import AuditSink
from rbacauth.service.background import BackgroundDispatcher
from rbacauth.service.bans import IPBanGate
from rbacauth.service.email import EmailSender
from rbacauth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    AlreadyVerifiedError,
    AuthenticationError,
    ConflictError,
    DependencyFailure,
    EmailUnverifiedError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    IPBannedError,
    NotFoundError,
    OTPMismatchError,
    OTPMissingError,
    ServerError,
    ServiceError,
    SocialLoginRequiredError,
    ValidationError,
)
from rbacauth.service.lockout import LockoutPolicy, LockoutTracker, is_privileged_email
from rbacauth.service.oauth import ExternalIdentity
from rbacauth.service.permissions import PermissionModel
from rbacauth.service.sessions import SessionRegistry
from rbacauth.storage.errors import UniqueViolation
from rbacauth.storage.models import OTPChallenge, Provider, ResourceType, User

logger = get_logger(__name__)

_SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9]")


def password_policy_violations(password: Optional[str], min_length: int = 8) -> List[str]:
    """Itemized reasons a password fails the strength policy (empty when it passes)."""
    password = password or ""
    errors = []
    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def require_strong_password(password: Optional[str], min_length: int = 8) -> None:
    violations = password_policy_violations(password, min_length)
    if violations:
        raise ValidationError(
            "Password does not meet requirements", detail={"errors": violations}
        )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_to_dict(user: User) -> Dict[str, Any]:
    role_name = user.role_name or (user.role.name if user.role else "user")
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role_id": user.role_id,
        "role_name": role_name,
        "provider": user.provider,
        "avatar": user.avatar,
        "is_active": user.is_active,
        "is_email_verified": user.is_email_verified,
        "last_login": _isoformat(user.last_login),
        "created_at": _isoformat(user.created_at),
        "deleted_at": _isoformat(user.deleted_at),
    }


@dataclass
class AuthResult:
    token: str
    user: User
    expires_at: datetime
    was_unverified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "token": self.token,
            "token_type": "bearer",
            "expires_at": self.expires_at.isoformat(),
            "user": user_to_dict(self.user),
        }
        if self.was_unverified:
            payload["was_unverified"] = True
        return payload


class AuthStore(Protocol):
    def create_user(self, email: str, **fields: Any) -> User: ...

    def get_user(self, user_id: str, *, populate_role: bool = False) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, *, include_deleted: bool = False, populate_role: bool = False
    ) -> Optional[User]: ...

    def get_user_by_external_id(self, external_id: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def soft_delete_user(self, user_id: str) -> bool: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_role_by_name(self, name: str, *, populate: bool = False) -> Any: ...


class AuthEngine:
    """Registration, login, verification and password-reset flows.

    Tokens are HS256 JWTs checked without a store round trip; session rows
    and audit entries are written in the background so they never decide
    the outcome of a login.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        settings: Settings,
        permissions: PermissionModel,
        lockout: LockoutTracker,
        bans: IPBanGate,
        sessions: SessionRegistry,
        audit: AuditSink,
        email: EmailSender,
        dispatcher: BackgroundDispatcher,
    ) -> None:
        self.store = store
        self.settings = settings
        self.permissions = permissions
        self.lockout = lockout
        self.bans = bans
        self.sessions = sessions
        self.audit = audit
        self.email = email
        self.dispatcher = dispatcher
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _password_matches(self, record: tuple[str, str], password: str) -> bool:
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        return self._password_matches(record, password)

    def generate_otp(self) -> str:
        length = self.settings.otp_length
        floor = 10 ** (length - 1)
        return str(floor + secrets.randbelow(9 * floor))

    # tokens

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_token(self, user_id: str, remember_me: bool = False) -> Tuple[str, datetime]:
        now = self._now()
        ttl_days = (
            self.settings.remember_me_ttl_days if remember_me else self.settings.token_ttl_days
        )
        expires_at = now + timedelta(days=ttl_days)
        payload = {
            "sub": user_id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "typ": "access",
        }
        return self._encode_jwt(payload), expires_at

    def verify_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("typ") != "access" or not payload.get("sub"):
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        optional: bool = False,
    ) -> Optional[User]:
        """Resolve a Bearer header to a live, active user with its role populated.

        With ``optional`` any failure yields None instead of raising, which is
        what logout relies on to accept expired tokens.
        """
        def _reject(message: str) -> None:
            if optional:
                return None
            raise AuthenticationError(message)

        token = self._extract_bearer(authorization)
        if not token:
            return _reject("Not authorized to access this route")
        payload = self.verify_token(token)
        if not payload:
            return _reject("Not authorized to access this route")
        user = self.store.get_user(payload["sub"], populate_role=True)
        if not user or user.is_deleted:
            return _reject("User not found")
        if not user.is_active:
            return _reject("User account is inactive")
        if self.settings.enforce_session_revocation and self.sessions.is_revoked(token):
            return _reject("Session has been terminated")

        if not optional:
            self.dispatcher.submit(
                self.sessions.touch(token, user.id, ip=ip, user_agent=user_agent),
                label="session_touch",
            )
        return user

    # registration and verification

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not email or not password:
            raise ValidationError("Please provide email and password")
        require_strong_password(password, self.settings.password_min_length)

        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists")
        role = self.store.get_role_by_name("user")
        if not role:
            raise ServerError("User role not found. Please seed the database.")

        otp = OTPChallenge.new(self.generate_otp(), self.settings.otp_ttl_minutes)
        try:
            user = self.store.create_user(
                email,
                first_name=first_name,
                last_name=last_name,
                role_id=role.id,
                role_name="user",
                provider=Provider.LOCAL.value,
                is_email_verified=False,
                otp=otp,
            )
        except UniqueViolation as exc:
            raise ConflictError("User already exists") from exc
        self.save_password(user.id, password)

        try:
            await asyncio.to_thread(
                self.email.send_otp, user.email, otp.code, first_name or "User", None, user.id
            )
        except Exception as exc:
            # Account creation and mail dispatch are not atomic; undo the account
            self.store.soft_delete_user(user.id)
            self.logger.error("registration_email_failed", user_id=user.id, error=str(exc))
            raise DependencyFailure(
                "Failed to send verification email. Please try again."
            ) from exc

        self.logger.info("user_registered", user_id=user.id)
        return {"user_id": user.id, "email": user.email, "requires_verification": True}

    def _pending_user(self, user_id: str) -> User:
        if not user_id:
            raise ValidationError("User ID is required")
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFoundError("User not found")
        if user.is_email_verified:
            raise AlreadyVerifiedError()
        return user

    async def verify_otp(self, user_id: str, code: str) -> AuthResult:
        if not code:
            raise ValidationError("User ID and OTP are required")
        user = self._pending_user(user_id)
        if not user.otp or not user.otp.code:
            raise OTPMissingError()
        if user.otp.is_expired(self._now()):
            raise ExpiredTokenError()
        if not hmac.compare_digest(user.otp.code.encode(), str(code).strip().encode()):
            self.logger.warning("otp_mismatch", user_id=user.id)
            raise OTPMismatchError()

        self.store.update_user(user.id, is_email_verified=True, otp=None)
        token, expires_at = self.issue_token(user.id)
        self.logger.info("email_verified", user_id=user.id)
        return AuthResult(token, self.store.get_user(user.id, populate_role=True), expires_at)

    async def resend_otp(self, user_id: str) -> Dict[str, Any]:
        user = self._pending_user(user_id)
        otp = OTPChallenge.new(self.generate_otp(), self.settings.otp_ttl_minutes)
        self.store.update_user(user.id, otp=otp)
        try:
            await asyncio.to_thread(
                self.email.send_otp, user.email, otp.code, user.first_name or "User", None, user.id
            )
        except Exception as exc:
            self.logger.error("otp_resend_failed", user_id=user.id, error=str(exc))
            raise DependencyFailure("Failed to send OTP email. Please try again.") from exc
        return {}

    # login

    async def _login_failed(
        self,
        *,
        ip: str,
        email: str,
        privileged: bool,
        policy: LockoutPolicy,
        reason: str,
        actor: Optional[User],
        user_agent: Optional[str],
        error: Optional[ServiceError] = None,
    ) -> NoReturn:
        count = await self.lockout.record_failed_attempt(ip, email, privileged)
        self.audit.record(
            "LOGIN_FAILED",
            ResourceType.AUTH.value,
            actor=actor,
            resource_id=actor.id if actor else email,
            resource_name=actor.email if actor else email,
            details={
                "reason": reason,
                "attempt_count": count,
                "max_attempts": policy.max_attempts,
                "is_admin_email": privileged,
            },
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.warning(
            "login_failed",
            reason=reason,
            attempt_count=count,
            max_attempts=policy.max_attempts,
            ip=ip,
        )
        if count >= policy.max_attempts:
            self.bans.ban_ip(ip, policy.reason, duration_hours=policy.ban_hours)
            raise AccountLockedError()
        raise error or InvalidCredentialsError(max(0, policy.max_attempts - count))

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not email or not password:
            raise ValidationError("Please provide email and password")
        ip = ip or "unknown"
        if self.bans.is_banned(ip):
            raise IPBannedError()

        privileged = is_privileged_email(email)
        policy = self.lockout.policy_for(email)
        failure = dict(ip=ip, email=email, privileged=privileged, policy=policy, user_agent=user_agent)

        user = self.store.get_user_by_email(email, populate_role=True)
        if user is None:
            await self._login_failed(reason="User not found", actor=None, **failure)

        record = self.store.get_password_record(user.id)
        if record is None:
            await self._login_failed(
                reason="Social login account",
                actor=user,
                error=SocialLoginRequiredError(),
                **failure,
            )
        if not self._password_matches(record, password):
            await self._login_failed(reason="Invalid password", actor=user, **failure)

        await self.lockout.reset_attempts(ip, email)

        if not user.is_active:
            raise AccountInactiveError()
        if not user.is_email_verified:
            raise EmailUnverifiedError(user.id)

        return self._complete_login(
            user, remember_me=remember_me, ip=ip, user_agent=user_agent
        )

    def _complete_login(
        self,
        user: User,
        *,
        remember_me: bool,
        ip: Optional[str],
        user_agent: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> AuthResult:
        self.store.update_user(user.id, last_login=self._now())
        token, expires_at = self.issue_token(user.id, remember_me=remember_me)
        self.dispatcher.submit(
            self.sessions.open_session(
                user.id, token, ip=ip, user_agent=user_agent, remember_me=remember_me
            ),
            label="session_open",
        )
        user = self.store.get_user(user.id, populate_role=True)
        role_name = user.role_name or (user.role.name if user.role else "user")
        self.audit.record(
            "LOGIN_SUCCESS",
            ResourceType.AUTH.value,
            actor=user,
            resource_id=user.id,
            resource_name=user.email,
            details={"remember_me": bool(remember_me), "role_name": role_name, **(details or {})},
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("login_succeeded", user_id=user.id, remember_me=bool(remember_me))
        return AuthResult(token, user, expires_at)

    async def logout(
        self,
        principal: Optional[User],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        if principal is not None:
            self.audit.record(
                "LOGOUT",
                ResourceType.AUTH.value,
                actor=principal,
                resource_id=str(principal.id),
                resource_name=principal.email,
                ip=ip,
                user_agent=user_agent,
            )
        return {}

    async def oauth_login(
        self,
        identity: ExternalIdentity,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not identity.provider_id or not identity.email:
            raise ValidationError("OAuth identity is missing an id or email")

        user = self.store.get_user_by_external_id(identity.provider_id)
        if user is None:
            existing = self.store.get_user_by_email(identity.email)
            if existing is not None:
                user = self.store.update_user(
                    existing.id,
                    external_id=identity.provider_id,
                    provider=Provider.OAUTH.value,
                    avatar=identity.avatar_url or existing.avatar,
                    is_email_verified=True,
                    otp=None,
                )
                self.logger.info("oauth_account_linked", user_id=user.id)
            else:
                role = self.store.get_role_by_name("user")
                if not role:
                    raise ServerError("User role not found. Please seed the database.")
                user = self.store.create_user(
                    identity.email,
                    first_name=identity.given_name or "",
                    last_name=identity.family_name or "",
                    role_id=role.id,
                    role_name="user",
                    provider=Provider.OAUTH.value,
                    is_email_verified=True,
                    external_id=identity.provider_id,
                    avatar=identity.avatar_url,
                )
                self.logger.info("oauth_account_created", user_id=user.id)

        if user.is_deleted or not user.is_active:
            raise AccountInactiveError()
        return self._complete_login(
            user,
            remember_me=False,
            ip=ip,
            user_agent=user_agent,
            details={"provider": "google"},
        )

    # password reset

    @staticmethod
    def _hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    async def forgot_password(self, email: str) -> Dict[str, Any]:
        if not email:
            raise ValidationError("Email is required")
        user = self.store.get_user_by_email(email)
        # Unknown addresses get the same response as known ones
        if user is None:
            self.logger.info("password_reset_unknown_account")
            return {}
        if self.store.get_password_record(user.id) is None:
            raise SocialLoginRequiredError(status_code=400)

        raw_token = secrets.token_hex(32)
        self.store.update_user(
            user.id,
            reset_token_hash=self._hash_reset_token(raw_token),
            reset_token_expires_at=self._now()
            + timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        reset_url = f"{self.settings.frontend_url}/reset-password?token={raw_token}"
        try:
            await asyncio.to_thread(
                self.email.send_password_reset, user.email, reset_url, user.first_name or "User"
            )
        except Exception as exc:
            self.store.update_user(user.id, reset_token_hash=None, reset_token_expires_at=None)
            self.logger.error("password_reset_email_failed", user_id=user.id, error=str(exc))
            raise DependencyFailure(
                "Failed to send password reset email. Please try again."
            ) from exc

        self.audit.record(
            "PASSWORD_RESET_REQUEST",
            ResourceType.AUTH.value,
            actor=user,
            resource_id=user.id,
            resource_name=user.email,
        )
        return {}

    async def reset_password(self, token: str, new_password: str) -> AuthResult:
        if not token or not new_password:
            raise ValidationError("Token and password are required")
        require_strong_password(new_password, self.settings.password_min_length)

        user = self.store.get_user_by_reset_token(self._hash_reset_token(token))
        if (
            user is None
            or user.reset_token_expires_at is None
            or user.reset_token_expires_at <= self._now()
        ):
            raise InvalidResetTokenError()

        was_unverified = not user.is_email_verified
        self.save_password(user.id, new_password)
        changes: Dict[str, Any] = {"reset_token_hash": None, "reset_token_expires_at": None}
        # Following the mailed link proves ownership of the mailbox
        if was_unverified:
            changes.update(is_email_verified=True, otp=None)
        self.store.update_user(user.id, **changes)

        self.audit.record(
            "PASSWORD_RESET_SUCCESS",
            ResourceType.AUTH.value,
            actor=user,
            resource_id=user.id,
            resource_name=user.email,
            details={"email_verified": was_unverified},
        )
        auth_token, expires_at = self.issue_token(user.id)
        return AuthResult(
            auth_token,
            self.store.get_user(user.id, populate_role=True),
            expires_at,
            was_unverified=was_unverified,
        )

    def get_me(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get_user(user_id, populate_role=True)
        if not user or user.is_deleted:
            raise NotFoundError("User not found")
        payload = user_to_dict(user)
        payload["permissions"] = self.permissions.effective_permissions(user)
        return payload
