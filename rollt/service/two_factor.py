from __future__ import annotations

import base64
import hmac
import secrets
import string
import time
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Sequence

import pyotp
import qrcode

from rollt.storage.models import BackupCode

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str
    qr_code: str


class TwoFactorService:
    """TOTP secrets, QR provisioning and backup code helpers.

    Stateless apart from configuration; persistence of the resulting state is
    the caller's job.
    """

    def __init__(
        self,
        *,
        issuer: str = "Rollt",
        valid_window: int = 2,
        backup_code_count: int = 10,
        backup_code_length: int = 8,
    ) -> None:
        self.issuer = issuer
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self.backup_code_length = backup_code_length

    def new_enrollment(self, email: str) -> Enrollment:
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL).provisioning_uri(
            name=email, issuer_name=self.issuer
        )
        return Enrollment(secret=secret, provisioning_uri=uri, qr_code=render_qr_data_uri(uri))

    @staticmethod
    def normalize_code(code: Optional[str]) -> str:
        return "".join((code or "").split()).replace("-", "")

    @staticmethod
    def looks_like_totp(code: str) -> bool:
        return len(code) == TOTP_DIGITS and code.isdigit()

    def match_step(
        self,
        secret: str,
        code: str,
        *,
        last_used_step: Optional[int] = None,
        for_time: Optional[float] = None,
    ) -> Optional[int]:
        """Return the time step ``code`` was generated for, or None.

        Steps within ``valid_window`` of now are accepted. A step at or before
        ``last_used_step`` never matches, so an accepted code cannot be replayed.
        """
        code = self.normalize_code(code)
        if not self.looks_like_totp(code):
            return None
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        now = time.time() if for_time is None else for_time
        current = int(now // TOTP_INTERVAL)
        for offset in range(-self.valid_window, self.valid_window + 1):
            step = current + offset
            if step < 0:
                continue
            if last_used_step is not None and step <= last_used_step:
                continue
            if hmac.compare_digest(totp.generate_otp(step), code):
                return step
        return None

    def generate_backup_codes(self) -> List[str]:
        codes: set[str] = set()
        while len(codes) < self.backup_code_count:
            codes.add(
                "".join(
                    secrets.choice(BACKUP_CODE_ALPHABET)
                    for _ in range(self.backup_code_length)
                )
            )
        return sorted(codes)

    @staticmethod
    def normalize_backup_code(code: Optional[str]) -> str:
        return TwoFactorService.normalize_code(code).upper()


def render_qr_data_uri(payload: str) -> str:
    image = qrcode.make(payload)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def find_backup_code(
    candidates: Sequence[BackupCode], code: str, verify
) -> Optional[BackupCode]:
    """First unused code whose hash verifies against ``code``.

    ``verify`` is ``(hash, plaintext) -> bool``; every candidate is checked so
    the time taken does not reveal which slot matched.
    """
    match: Optional[BackupCode] = None
    for candidate in candidates:
        if candidate.used_at is not None:
            continue
        if verify(candidate.code_hash, code) and match is None:
            match = candidate
    return match
