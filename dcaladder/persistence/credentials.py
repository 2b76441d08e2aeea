# dcaladder/persistence/credentials.py
from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from dcaladder.persistence.db import DB, utc_now_iso


@dataclass(frozen=True)
class Credential:
    id: str
    user_id: str
    name: str
    api_key: str
    api_secret: str
    is_active: bool = True

    def public(self) -> dict:
        """Safe view for API responses (never exposes the secret)."""
        key = self.api_key or ""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "api_key": (key[:4] + "…" + key[-4:]) if len(key) > 8 else "***",
            "is_active": self.is_active,
        }


def _from_row(r: sqlite3.Row) -> Credential:
    return Credential(
        id=r["id"],
        user_id=r["user_id"],
        name=r["name"],
        api_key=r["api_key"],
        api_secret=r["api_secret"],
        is_active=bool(r["is_active"]),
    )


class CredentialStore:
    """Per-user exchange API keys, tried in insertion order by the worker."""

    def __init__(self, db: DB):
        self.db = db

    def add(
        self,
        user_id: str,
        name: str,
        api_key: str,
        api_secret: str,
        credential_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Credential:
        cred = Credential(
            id=credential_id or uuid.uuid4().hex,
            user_id=user_id,
            name=name,
            api_key=api_key,
            api_secret=api_secret,
            is_active=is_active,
        )
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO credentials(id, user_id, name, api_key, api_secret, is_active, created_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (cred.id, cred.user_id, cred.name, cred.api_key, cred.api_secret, 1 if is_active else 0, utc_now_iso()),
            )
        return cred

    def get(self, credential_id: str) -> Optional[Credential]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE id = ?", (credential_id,)).fetchone()
        return _from_row(row) if row else None

    def list_for_user(self, user_id: str) -> List[Credential]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM credentials WHERE user_id = ? ORDER BY created_at, rowid",
                (user_id,),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def available_for(self, user_id: str, exclude: Iterable[str] = ()) -> List[Credential]:
        """Active credentials of the user minus the ones already failed for an order."""
        skip = set(exclude or ())
        return [c for c in self.list_for_user(user_id) if c.is_active and c.id not in skip]

    def set_active(self, credential_id: str, active: bool) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE credentials SET is_active = ? WHERE id = ?",
                (1 if active else 0, credential_id),
            )
            return cur.rowcount == 1

    def ensure_default(self, user_id: str, api_key: str, api_secret: str, name: str = "default") -> Credential:
        """
        Idempotent startup seed: one credential per user from settings.
        The id is derived from the user so restarts reuse the same row.
        """
        credential_id = f"{user_id}:{name}"
        existing = self.get(credential_id)
        if existing is not None:
            if existing.api_key != api_key or existing.api_secret != api_secret:
                with self.db.connect() as conn:
                    conn.execute(
                        "UPDATE credentials SET api_key = ?, api_secret = ? WHERE id = ?",
                        (api_key, api_secret, credential_id),
                    )
                existing = self.get(credential_id)
            return existing
        return self.add(user_id, name, api_key, api_secret, credential_id=credential_id)
