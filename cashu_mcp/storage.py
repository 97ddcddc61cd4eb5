"""SQLite storage for mints, keysets, proofs, quotes and history."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Iterable, cast

import aiosqlite

from .types import (
    HistoryEntry,
    Keyset,
    MeltQuote,
    Mint,
    MintQuote,
    Proof,
    ProofState,
    Token,
    WalletError,
)

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS mints (
        mint_url TEXT PRIMARY KEY,
        name TEXT,
        trusted INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keysets (
        id TEXT NOT NULL,
        mint_url TEXT NOT NULL REFERENCES mints(mint_url) ON DELETE CASCADE,
        unit TEXT NOT NULL,
        active INTEGER NOT NULL,
        input_fee_ppk INTEGER NOT NULL DEFAULT 0,
        keys TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (mint_url, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS counters (
        mint_url TEXT NOT NULL,
        keyset_id TEXT NOT NULL,
        counter INTEGER NOT NULL,
        PRIMARY KEY (mint_url, keyset_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proofs (
        secret TEXT PRIMARY KEY,
        id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        C TEXT NOT NULL,
        mint_url TEXT NOT NULL,
        state TEXT NOT NULL,
        used_by TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_proofs_mint_state ON proofs (mint_url, state)",
    """
    CREATE TABLE IF NOT EXISTS mint_quotes (
        mint_url TEXT NOT NULL,
        quote TEXT NOT NULL,
        state TEXT NOT NULL,
        request TEXT NOT NULL,
        amount INTEGER,
        unit TEXT NOT NULL,
        expiry INTEGER,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (mint_url, quote)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS melt_quotes (
        mint_url TEXT NOT NULL,
        quote TEXT NOT NULL,
        state TEXT NOT NULL,
        request TEXT NOT NULL,
        amount INTEGER NOT NULL,
        fee_reserve INTEGER NOT NULL,
        unit TEXT NOT NULL,
        expiry INTEGER NOT NULL,
        payment_preimage TEXT,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (mint_url, quote)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        mint_url TEXT NOT NULL,
        unit TEXT NOT NULL,
        amount INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        quote_id TEXT,
        state TEXT,
        payment_request TEXT,
        token TEXT
    )
    """,
)


class StoredProof(Proof):
    """Proof row with its owning mint and local state."""

    mintUrl: str
    state: ProofState
    usedBy: str | None


def _now() -> int:
    return int(time.time())


# ──────────────────────────────────────────────────────────────────────────────
# Row conversion
# ──────────────────────────────────────────────────────────────────────────────


def _mint_from_row(row: aiosqlite.Row) -> Mint:
    return Mint(
        mintUrl=row["mint_url"],
        name=row["name"],
        trusted=bool(row["trusted"]),
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


def _proof_from_row(row: aiosqlite.Row) -> StoredProof:
    return StoredProof(
        id=row["id"],
        amount=row["amount"],
        secret=row["secret"],
        C=row["C"],
        mintUrl=row["mint_url"],
        state=row["state"],
        usedBy=row["used_by"],
    )


def _mint_quote_from_row(row: aiosqlite.Row) -> MintQuote:
    return MintQuote(
        quote=row["quote"],
        mintUrl=row["mint_url"],
        amount=row["amount"],
        state=row["state"],
        expiry=row["expiry"],
        request=row["request"],
        unit=row["unit"],
    )


def _melt_quote_from_row(row: aiosqlite.Row) -> MeltQuote:
    return MeltQuote(
        quote=row["quote"],
        mintUrl=row["mint_url"],
        amount=row["amount"],
        fee_reserve=row["fee_reserve"],
        state=row["state"],
        expiry=row["expiry"],
        request=row["request"],
        payment_preimage=row["payment_preimage"],
        unit=row["unit"],
    )


def _history_from_row(row: aiosqlite.Row) -> HistoryEntry:
    entry: dict[str, Any] = {
        "id": str(row["id"]),
        "type": row["type"],
        "createdAt": row["created_at"],
        "mintUrl": row["mint_url"],
        "unit": row["unit"],
        "amount": row["amount"],
    }
    if row["type"] in ("mint", "melt"):
        entry["quoteId"] = row["quote_id"]
        entry["state"] = row["state"]
    if row["type"] == "mint":
        entry["paymentRequest"] = row["payment_request"]
    if row["type"] == "send":
        entry["token"] = json.loads(row["token"]) if row["token"] else None
    return cast(HistoryEntry, entry)


# ──────────────────────────────────────────────────────────────────────────────
# Storage
# ──────────────────────────────────────────────────────────────────────────────


class Storage:
    """Async SQLite storage used by the wallet engine.

    Example:
        async with Storage(Path("cashu.db")) as storage:
            mint = await storage.get_mint_by_url("https://mint.example")
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open database connection and create tables if needed."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")

        for statement in SCHEMA_STATEMENTS:
            await self._connection.execute(statement)
        await self._connection.commit()

        logger.debug("Connected to database: %s", self._db_path)

    async def close(self) -> None:
        """Close database connection."""
        if self._connection is not None:
            connection, self._connection = self._connection, None
            await connection.close()
            logger.debug("Disconnected from database: %s", self._db_path)

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def __aenter__(self) -> "Storage":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database not connected")
        return self._connection

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self._conn.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self._conn.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def _write(self, sql: str, params: Iterable[Any] = ()) -> int:
        cursor = await self._conn.execute(sql, tuple(params))
        await self._conn.commit()
        return cursor.rowcount

    # ───────────────────────── Mints ─────────────────────────────────

    async def get_mint_by_url(self, mint_url: str) -> Mint | None:
        row = await self._fetchone("SELECT * FROM mints WHERE mint_url = ?", (mint_url,))
        return _mint_from_row(row) if row else None

    async def get_all_mints(self) -> list[Mint]:
        """All mints in insertion order."""
        rows = await self._fetchall("SELECT * FROM mints ORDER BY rowid")
        return [_mint_from_row(row) for row in rows]

    async def get_trusted_mints(self) -> list[Mint]:
        rows = await self._fetchall("SELECT * FROM mints WHERE trusted = 1 ORDER BY rowid")
        return [_mint_from_row(row) for row in rows]

    async def upsert_mint(self, mint_url: str, *, name: str | None, trusted: bool) -> Mint:
        now = _now()
        await self._write(
            """
            INSERT INTO mints (mint_url, name, trusted, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (mint_url) DO UPDATE SET
                name = excluded.name,
                trusted = excluded.trusted,
                updated_at = excluded.updated_at
            """,
            (mint_url, name, int(trusted), now, now),
        )
        mint = await self.get_mint_by_url(mint_url)
        if mint is None:
            raise WalletError(f"Mint {mint_url} was not stored")
        return mint

    async def set_mint_trusted(self, mint_url: str, trusted: bool) -> bool:
        """Flip the trust flag. Returns False if the mint is unknown."""
        updated = await self._write(
            "UPDATE mints SET trusted = ?, updated_at = ? WHERE mint_url = ?",
            (int(trusted), _now(), mint_url),
        )
        return updated > 0

    async def delete_mint(self, mint_url: str) -> bool:
        """Delete a mint row and its cached keysets.

        Proofs, quotes, history and derivation counters are kept.
        """
        deleted = await self._write("DELETE FROM mints WHERE mint_url = ?", (mint_url,))
        return deleted > 0

    # ───────────────────────── Keysets ─────────────────────────────────

    async def save_keysets(self, keysets: list[Keyset]) -> None:
        now = _now()
        await self._conn.executemany(
            """
            INSERT INTO keysets (id, mint_url, unit, active, input_fee_ppk, keys, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (mint_url, id) DO UPDATE SET
                unit = excluded.unit,
                active = excluded.active,
                input_fee_ppk = excluded.input_fee_ppk,
                keys = CASE WHEN excluded.keys = '{}' THEN keysets.keys ELSE excluded.keys END,
                updated_at = excluded.updated_at
            """,
            [
                (
                    ks["id"],
                    ks["mintUrl"],
                    ks["unit"],
                    int(ks["active"]),
                    int(ks["input_fee_ppk"] or 0),
                    json.dumps(ks["keys"]),
                    now,
                )
                for ks in keysets
            ],
        )
        await self._conn.commit()

    async def get_keysets(self, mint_url: str) -> list[Keyset]:
        rows = await self._fetchall(
            "SELECT * FROM keysets WHERE mint_url = ? ORDER BY rowid", (mint_url,)
        )
        return [
            Keyset(
                id=row["id"],
                mintUrl=row["mint_url"],
                unit=row["unit"],
                active=bool(row["active"]),
                input_fee_ppk=row["input_fee_ppk"],
                keys=json.loads(row["keys"]),
            )
            for row in rows
        ]

    # ───────────────────────── Counters ─────────────────────────────────

    async def reserve_counter(self, mint_url: str, keyset_id: str, count: int) -> int:
        """Reserve ``count`` derivation indices and return the first one."""
        row = await self._fetchone(
            """
            INSERT INTO counters (mint_url, keyset_id, counter) VALUES (?, ?, ?)
            ON CONFLICT (mint_url, keyset_id) DO UPDATE SET counter = counter + excluded.counter
            RETURNING counter
            """,
            (mint_url, keyset_id, count),
        )
        await self._conn.commit()
        if row is None:
            raise WalletError(f"Counter for keyset {keyset_id} was not reserved")
        return row["counter"] - count

    async def get_counter(self, mint_url: str, keyset_id: str) -> int:
        row = await self._fetchone(
            "SELECT counter FROM counters WHERE mint_url = ? AND keyset_id = ?",
            (mint_url, keyset_id),
        )
        return row["counter"] if row else 0

    async def bump_counter(self, mint_url: str, keyset_id: str, at_least: int) -> None:
        """Move the counter forward to ``at_least``; never moves it back."""
        await self._write(
            """
            INSERT INTO counters (mint_url, keyset_id, counter) VALUES (?, ?, ?)
            ON CONFLICT (mint_url, keyset_id) DO UPDATE SET
                counter = MAX(counter, excluded.counter)
            """,
            (mint_url, keyset_id, at_least),
        )

    # ───────────────────────── Proofs ─────────────────────────────────

    async def save_proofs(
        self,
        mint_url: str,
        proofs: list[Proof],
        *,
        state: ProofState = "ready",
        used_by: str | None = None,
    ) -> None:
        now = _now()
        await self._conn.executemany(
            """
            INSERT INTO proofs (secret, id, amount, C, mint_url, state, used_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (secret) DO UPDATE SET state = excluded.state, used_by = excluded.used_by
            """,
            [
                (p["secret"], p["id"], p["amount"], p["C"], mint_url, state, used_by, now)
                for p in proofs
            ],
        )
        await self._conn.commit()

    async def set_proof_state(
        self, secrets: list[str], state: ProofState, *, used_by: str | None = None
    ) -> None:
        if not secrets:
            return
        placeholders = ",".join("?" for _ in secrets)
        await self._write(
            f"UPDATE proofs SET state = ?, used_by = ? WHERE secret IN ({placeholders})",
            (state, used_by, *secrets),
        )

    async def get_proofs(
        self, *, mint_url: str | None = None, state: ProofState | None = None
    ) -> list[StoredProof]:
        clauses, params = [], []
        if mint_url is not None:
            clauses.append("mint_url = ?")
            params.append(mint_url)
        if state is not None:
            clauses.append("state = ?")
            params.append(state)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(f"SELECT * FROM proofs {where} ORDER BY rowid", params)
        return [_proof_from_row(row) for row in rows]

    async def get_proofs_used_by(self, used_by: str) -> list[StoredProof]:
        rows = await self._fetchall("SELECT * FROM proofs WHERE used_by = ?", (used_by,))
        return [_proof_from_row(row) for row in rows]

    async def get_ready_balances(self) -> dict[str, int]:
        rows = await self._fetchall(
            """
            SELECT mint_url, SUM(amount) AS balance FROM proofs
            WHERE state = 'ready' GROUP BY mint_url ORDER BY MIN(rowid)
            """
        )
        return {row["mint_url"]: row["balance"] for row in rows}

    # ───────────────────────── Mint quotes ─────────────────────────────────

    async def save_mint_quote(self, quote: MintQuote) -> None:
        await self._write(
            """
            INSERT INTO mint_quotes (mint_url, quote, state, request, amount, unit, expiry, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (mint_url, quote) DO UPDATE SET
                state = excluded.state,
                amount = COALESCE(excluded.amount, mint_quotes.amount),
                expiry = excluded.expiry
            """,
            (
                quote["mintUrl"],
                quote["quote"],
                quote["state"],
                quote["request"],
                quote["amount"],
                quote["unit"],
                quote["expiry"],
                _now(),
            ),
        )

    async def get_mint_quote(self, mint_url: str, quote_id: str) -> MintQuote | None:
        row = await self._fetchone(
            "SELECT * FROM mint_quotes WHERE mint_url = ? AND quote = ?", (mint_url, quote_id)
        )
        return _mint_quote_from_row(row) if row else None

    async def get_mint_quotes_by_state(self, *states: str) -> list[MintQuote]:
        placeholders = ",".join("?" for _ in states)
        rows = await self._fetchall(
            f"SELECT * FROM mint_quotes WHERE state IN ({placeholders}) ORDER BY rowid", states
        )
        return [_mint_quote_from_row(row) for row in rows]

    async def set_mint_quote_state(self, mint_url: str, quote_id: str, state: str) -> None:
        await self._write(
            "UPDATE mint_quotes SET state = ? WHERE mint_url = ? AND quote = ?",
            (state, mint_url, quote_id),
        )

    # ───────────────────────── Melt quotes ─────────────────────────────────

    async def save_melt_quote(self, quote: MeltQuote) -> None:
        await self._write(
            """
            INSERT INTO melt_quotes (
                mint_url, quote, state, request, amount, fee_reserve, unit, expiry,
                payment_preimage, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (mint_url, quote) DO UPDATE SET
                state = excluded.state,
                payment_preimage = excluded.payment_preimage
            """,
            (
                quote["mintUrl"],
                quote["quote"],
                quote["state"],
                quote["request"],
                quote["amount"],
                quote["fee_reserve"],
                quote["unit"],
                quote["expiry"],
                quote["payment_preimage"],
                _now(),
            ),
        )

    async def get_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote | None:
        row = await self._fetchone(
            "SELECT * FROM melt_quotes WHERE mint_url = ? AND quote = ?", (mint_url, quote_id)
        )
        return _melt_quote_from_row(row) if row else None

    async def get_melt_quotes_by_state(self, *states: str) -> list[MeltQuote]:
        placeholders = ",".join("?" for _ in states)
        rows = await self._fetchall(
            f"SELECT * FROM melt_quotes WHERE state IN ({placeholders}) ORDER BY rowid", states
        )
        return [_melt_quote_from_row(row) for row in rows]

    async def update_melt_quote(
        self, mint_url: str, quote_id: str, *, state: str, payment_preimage: str | None
    ) -> None:
        await self._write(
            """
            UPDATE melt_quotes SET state = ?, payment_preimage = COALESCE(?, payment_preimage)
            WHERE mint_url = ? AND quote = ?
            """,
            (state, payment_preimage, mint_url, quote_id),
        )

    # ───────────────────────── History ─────────────────────────────────

    async def add_history(
        self,
        type: str,
        *,
        mint_url: str,
        unit: str,
        amount: int,
        quote_id: str | None = None,
        state: str | None = None,
        payment_request: str | None = None,
        token: Token | None = None,
    ) -> HistoryEntry:
        """Append a history entry. Entries are never updated."""
        cursor = await self._conn.execute(
            """
            INSERT INTO history (
                type, mint_url, unit, amount, created_at, quote_id, state, payment_request, token
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                type,
                mint_url,
                unit,
                amount,
                _now(),
                quote_id,
                state,
                payment_request,
                json.dumps(token) if token is not None else None,
            ),
        )
        await self._conn.commit()
        row = await self._fetchone("SELECT * FROM history WHERE id = ?", (cursor.lastrowid,))
        if row is None:
            raise WalletError(f"History entry {cursor.lastrowid} was not stored")
        return _history_from_row(row)

    async def get_paginated_history(self, offset: int = 0, limit: int = 100) -> list[HistoryEntry]:
        """History entries, most recent first."""
        rows = await self._fetchall(
            "SELECT * FROM history ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_history_from_row(row) for row in rows]

    async def count_history(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM history")
        return row["n"] if row else 0
