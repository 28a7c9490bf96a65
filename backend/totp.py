# totp.py — Time-based one-time passwords (RFC 6238, SHA-1, 6 digits, 30 s)
# Seeds are stored encrypted. Each accepted code burns its time step for
# that user (used_totp_codes), so a code cannot be replayed inside its window.

import hmac
import time
import logging
from typing import Any, Callable, Dict, Optional

import pyotp
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService
from crypto import Crypto
from errors import Conflict, ValidationFailed, Unauthorized
from models import User, UsedTOTPCode

logger = logging.getLogger("berth.auth")

ISSUER = "Berth"
VALID_WINDOW = 1  # accept the previous and next step too


class TOTPService:
    def __init__(self, db: AsyncSession, crypto: Crypto, clock: Callable[[], float] = time.time):
        self.db = db
        self.crypto = crypto
        self.clock = clock

    def _secret(self, user: User) -> str:
        if not user.totp_secret:
            raise ValidationFailed("TOTP has not been set up", error="totp_not_configured")
        return self.crypto.decrypt(user.totp_secret)

    async def setup(self, user: User) -> Dict[str, Any]:
        if user.totp_enabled:
            raise Conflict("TOTP is already enabled", error="totp_already_enabled")
        secret = pyotp.random_base32()
        user.totp_secret = self.crypto.encrypt(secret)
        await self.db.flush()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.username, issuer_name=ISSUER)
        return {"secret": secret, "provisioning_uri": uri, "issuer": ISSUER}

    async def verify_code(self, user: User, code: str) -> bool:
        """Check a code and burn its time step. False on mismatch or replay."""
        if not code or not user.totp_secret:
            return False
        totp = pyotp.TOTP(self._secret(user))
        now = int(self.clock())
        current_step = now // totp.interval

        matched_step: Optional[int] = None
        for offset in range(-VALID_WINDOW, VALID_WINDOW + 1):
            step = current_step + offset
            if hmac.compare_digest(totp.at(step * totp.interval), code):
                matched_step = step
                break
        if matched_step is None:
            return False

        used = (
            await self.db.execute(
                select(UsedTOTPCode.id).where(
                    UsedTOTPCode.user_id == user.id, UsedTOTPCode.time_step == matched_step
                )
            )
        ).first()
        if used is not None:
            logger.warning(f"TOTP replay rejected for user {user.id}")
            return False
        self.db.add(UsedTOTPCode(user_id=user.id, time_step=matched_step))
        # Steps older than the window can never match again
        await self.db.execute(
            delete(UsedTOTPCode).where(
                UsedTOTPCode.user_id == user.id,
                UsedTOTPCode.time_step < current_step - VALID_WINDOW,
            )
        )
        await self.db.flush()
        return True

    async def enable(self, user: User, code: str) -> None:
        if user.totp_enabled:
            raise Conflict("TOTP is already enabled", error="totp_already_enabled")
        self._secret(user)
        if not await self.verify_code(user, code):
            raise ValidationFailed("Invalid TOTP code", error="invalid_totp_code")
        user.totp_enabled = True
        await self.db.flush()

    async def disable(self, user: User, password: str, code: str) -> None:
        if not user.totp_enabled:
            raise ValidationFailed("TOTP is not enabled", error="totp_not_enabled")
        if not AuthService.verify_password(password, user.password_hash):
            raise Unauthorized("Invalid password", error="invalid_password")
        if not await self.verify_code(user, code):
            raise ValidationFailed("Invalid TOTP code", error="invalid_totp_code")
        user.totp_enabled = False
        user.totp_secret = None
        await self.db.flush()

    def status(self, user: User) -> Dict[str, bool]:
        return {"enabled": bool(user.totp_enabled), "configured": bool(user.totp_secret)}
