# dcaladder/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from dcaladder.ops.context import get_cycle_id, get_run_id
from dcaladder.persistence.db import DB, utc_now_iso

log = logging.getLogger("dcaladder.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file so the audit tail endpoint works
    without touching the DB.

    run_id / cycle_id default to the values bound in dcaladder.ops.context.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            # never crash the bot due to audit file issues
            log.warning("audit jsonl unavailable (%s): %s", self.jsonl_path, e)

    def event(
        self,
        event_type: str,
        bot_id: Optional[str] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
        cycle_id: Optional[str] = None,
    ) -> None:
        run_id = run_id or get_run_id()
        cycle_id = cycle_id or get_cycle_id()
        body = dict(details or {})
        if bot_id is not None:
            body.setdefault("bot_id", bot_id)
        payload = json.dumps(body, ensure_ascii=False, default=str)
        ts = utc_now_iso()

        # 1) DB (source of truth)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, run_id, cycle_id, symbol, event_type, action, details_json)
                VALUES (?,?,?,?,?,?,?)
                """,
                (ts, run_id, cycle_id, symbol, event_type, action, payload),
            )

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "run_id": run_id,
                "cycle_id": cycle_id,
                "symbol": symbol,
                "action": action,
                "details": body,
            }
        )

    def recent(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM events"
        params: List[Any] = []
        if event_type:
            sql += " WHERE event_type = ?"
            params.append(event_type)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))

        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        out = []
        for r in rows:
            out.append(
                {
                    "id": r["id"],
                    "timestamp_utc": r["timestamp_utc"],
                    "run_id": r["run_id"],
                    "cycle_id": r["cycle_id"],
                    "symbol": r["symbol"],
                    "event_type": r["event_type"],
                    "action": r["action"],
                    "details": json.loads(r["details_json"] or "{}"),
                }
            )
        return out

    def tail_jsonl(self, n: int = 200) -> List[Dict[str, Any]]:
        if not self.jsonl_path.exists():
            return []
        lines = self.jsonl_path.read_text(encoding="utf-8").splitlines()[-int(n):]
        out = []
        for line in lines:
            try:
                out.append(json.loads(line))
            except ValueError:
                continue
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never crash the trading loop because the audit file write failed
            log.warning("audit jsonl write failed: %s", e)
