from __future__ import annotations

import json
import uuid
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from stepauth.logging import get_logger
from stepauth.storage.errors import ConstraintViolation
from stepauth.storage.models import (
    ChallengePurpose,
    ConsumedReason,
    OTPChallenge,
    RefreshHead,
    User,
    utc_now,
)

# Concurrent issues for the same pair race on the partial unique index; the
# loser re-runs its supersede+insert transaction.
_ISSUE_RETRIES = 3

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id UUID PRIMARY KEY,
        subject_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INT NOT NULL DEFAULT 0,
        max_attempts INT NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        consumed_reason TEXT,
        consumed_at TIMESTAMPTZ,
        version INT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS otp_challenge_one_active
        ON otp_challenge (subject_id, purpose) WHERE NOT consumed
    """,
    """
    CREATE INDEX IF NOT EXISTS otp_challenge_pair_created
        ON otp_challenge (subject_id, purpose, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_head (
        subject_id TEXT PRIMARY KEY,
        jti TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        rotated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential, challenge and refresh-head store.

    Challenge exclusivity is enforced by a partial unique index on
    ``(subject_id, purpose) WHERE NOT consumed``; verify decisions land through
    a version-guarded ``UPDATE`` so two verifiers can never both win.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- users & credentials -------------------------------------------------

    def create_user(self, email: str, *, meta: Optional[dict] = None) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        created_at = utc_now()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, created_at, is_verified, meta)
                    VALUES (%s, %s, %s, FALSE, %s)
                    """,
                    (user_id, normalized, created_at, json.dumps(meta) if meta else None),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(id=user_id, email=normalized, created_at=created_at, meta=meta)

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row.get("created_at") or utc_now(),
            is_verified=bool(row.get("is_verified", False)),
            meta=row.get("meta"),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_user_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET is_verified = TRUE WHERE id = %s AND NOT is_verified",
                (user_id,),
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- OTP challenges ------------------------------------------------------

    @staticmethod
    def _challenge_from_row(row: dict) -> OTPChallenge:
        reason = row.get("consumed_reason")
        return OTPChallenge(
            id=str(row["id"]),
            subject_id=row["subject_id"],
            purpose=ChallengePurpose(row["purpose"]),
            code_hash=row["code_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts", 0)),
            max_attempts=int(row["max_attempts"]),
            consumed=bool(row.get("consumed", False)),
            consumed_reason=ConsumedReason(reason) if reason else None,
            consumed_at=row.get("consumed_at"),
            version=int(row.get("version", 0)),
        )

    def create_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        """Supersede live challenges for the pair and insert ``challenge`` in one transaction."""
        purpose = ChallengePurpose(challenge.purpose).value
        for attempt in range(1, _ISSUE_RETRIES + 1):
            try:
                with self._connect() as conn:
                    with conn.transaction():
                        conn.execute(
                            """
                            UPDATE otp_challenge
                            SET consumed = TRUE, consumed_reason = %s, consumed_at = now(),
                                version = version + 1
                            WHERE subject_id = %s AND purpose = %s AND NOT consumed
                            """,
                            (
                                ConsumedReason.SUPERSEDED.value,
                                challenge.subject_id,
                                purpose,
                            ),
                        )
                        conn.execute(
                            """
                            INSERT INTO otp_challenge (
                                id, subject_id, purpose, code_hash, created_at, expires_at,
                                attempts, max_attempts, consumed, consumed_reason, consumed_at, version
                            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, FALSE, NULL, NULL, %s)
                            """,
                            (
                                challenge.id,
                                challenge.subject_id,
                                purpose,
                                challenge.code_hash,
                                challenge.created_at,
                                challenge.expires_at,
                                challenge.attempts,
                                challenge.max_attempts,
                                challenge.version,
                            ),
                        )
                return challenge
            except errors.UniqueViolation:
                self.logger.warning(
                    "otp_issue_race_retry",
                    subject_id=challenge.subject_id,
                    purpose=purpose,
                    attempt=attempt,
                )
        raise ConstraintViolation(
            "could not install challenge",
            {"subject_id": challenge.subject_id, "purpose": purpose},
        )

    def get_challenge(self, challenge_id: str) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def get_latest_challenge(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_challenge
                WHERE subject_id = %s AND purpose = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (subject_id, ChallengePurpose(purpose).value),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def get_active_challenge(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_challenge
                WHERE subject_id = %s AND purpose = %s AND NOT consumed
                """,
                (subject_id, ChallengePurpose(purpose).value),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def list_challenges(
        self, subject_id: str, purpose: Optional[ChallengePurpose] = None
    ) -> List[OTPChallenge]:
        query = "SELECT * FROM otp_challenge WHERE subject_id = %s"
        params: list = [subject_id]
        if purpose is not None:
            query += " AND purpose = %s"
            params.append(ChallengePurpose(purpose).value)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._challenge_from_row(row) for row in rows]

    def compare_and_set_challenge(
        self, updated: OTPChallenge, expected_version: int
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE otp_challenge
                SET attempts = %s, consumed = %s, consumed_reason = %s,
                    consumed_at = %s, version = %s
                WHERE id = %s AND version = %s AND NOT consumed
                """,
                (
                    updated.attempts,
                    updated.consumed,
                    updated.consumed_reason.value if updated.consumed_reason else None,
                    updated.consumed_at,
                    updated.version,
                    updated.id,
                    expected_version,
                ),
            )
            return cur.rowcount == 1

    # -- refresh token heads -------------------------------------------------

    def get_refresh_head(self, subject_id: str) -> Optional[RefreshHead]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_head WHERE subject_id = %s", (subject_id,)
            ).fetchone()
        if not row:
            return None
        return RefreshHead(
            subject_id=row["subject_id"],
            jti=row["jti"],
            expires_at=row["expires_at"],
            rotated_at=row.get("rotated_at") or utc_now(),
        )

    def set_refresh_head(self, head: RefreshHead) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_head (subject_id, jti, expires_at, rotated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (subject_id) DO UPDATE
                SET jti = EXCLUDED.jti,
                    expires_at = EXCLUDED.expires_at,
                    rotated_at = EXCLUDED.rotated_at
                """,
                (head.subject_id, head.jti, head.expires_at, head.rotated_at),
            )

    def rotate_refresh_head(
        self, subject_id: str, expected_jti: str, new_head: RefreshHead
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_head
                SET jti = %s, expires_at = %s, rotated_at = %s
                WHERE subject_id = %s AND jti = %s
                """,
                (
                    new_head.jti,
                    new_head.expires_at,
                    new_head.rotated_at,
                    subject_id,
                    expected_jti,
                ),
            )
            return cur.rowcount == 1

    def delete_refresh_head(self, subject_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_head WHERE subject_id = %s", (subject_id,))
