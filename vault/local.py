"""
vault/local.py -- SQLAlchemy Core vault backend for development and tests.

Implements the same SecretVault / VaultManager contract as vault/azure.py on
two tables, so the provisioner, store, and flow coordinator run unchanged with
VAULT_BACKEND=local:

  vaults  -- one row per provisioned tenant vault (name, location, tags).
  secrets -- (vault_name, name) -> value. Deletes are soft: deleted_at is set
             and the row stays until purge_deleted() runs (the API purge
             loop calls it with LOCAL_VAULT_RETENTION_DAYS). Setting a
             soft-deleted secret again revives it.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path default: credvault_vaults.db at the repo root (LOCAL_VAULT_DB_URL).

Layer rule: vault/ imports from core/ only.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Column, MetaData, String, Table, Text, and_, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from vault.base import VaultOutcome, VaultResult, VaultParameters

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_vaults = Table(
    "vaults",
    _metadata,
    Column("name", String(24), primary_key=True),
    Column("location", String(64), nullable=False),
    Column("tenant_id", String(64), nullable=False),
    Column("principal_id", String(64), nullable=False),
    Column("tags", Text, nullable=False, default="{}"),
    Column("created_at", Text, nullable=False),
)

_secrets = Table(
    "secrets",
    _metadata,
    Column("vault_name", String(24), primary_key=True),
    Column("name", String(127), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
    Column("deleted_at", Text),  # NULL = live secret
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so polling reads do not block provisioning writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Vault client
# ---------------------------------------------------------------------------


class LocalSecretVault:
    """SecretVault over one row of the vaults table. timeout is accepted and ignored."""

    def __init__(self, name: str, engine: Engine) -> None:
        self.name = name
        self._engine = engine

    def _vault_exists(self, conn) -> bool:
        row = conn.execute(select(_vaults.c.name).where(_vaults.c.name == self.name)).first()
        return row is not None

    def probe(self, timeout: Optional[float] = None) -> VaultResult:
        try:
            with self._engine.connect() as conn:
                if not self._vault_exists(conn):
                    return VaultResult.not_found()
                conn.execute(select(_secrets.c.name).where(_secrets.c.vault_name == self.name).limit(25)).fetchall()
        except OperationalError as e:
            return VaultResult(VaultOutcome.TRANSIENT, error=e)
        return VaultResult.ok()

    def get_secret(self, name: str, timeout: Optional[float] = None) -> VaultResult:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(_secrets.c.value).where(
                        and_(
                            _secrets.c.vault_name == self.name,
                            _secrets.c.name == name,
                            _secrets.c.deleted_at.is_(None),
                        )
                    )
                ).first()
        except OperationalError as e:
            return VaultResult(VaultOutcome.TRANSIENT, error=e)
        if row is None:
            return VaultResult.not_found()
        return VaultResult.ok(row[0])

    def set_secret(self, name: str, value: str, timeout: Optional[float] = None) -> VaultResult:
        """Overwrite the whole value (last writer wins)."""
        key = and_(_secrets.c.vault_name == self.name, _secrets.c.name == name)
        try:
            with self._engine.connect() as conn:
                if not self._vault_exists(conn):
                    return VaultResult.not_found()
                updated = conn.execute(
                    _secrets.update().where(key).values(value=value, updated_at=_now_iso(), deleted_at=None)
                )
                if updated.rowcount == 0:
                    conn.execute(
                        _secrets.insert().values(
                            vault_name=self.name,
                            name=name,
                            value=value,
                            updated_at=_now_iso(),
                            deleted_at=None,
                        )
                    )
                conn.commit()
        except IntegrityError:
            # A concurrent writer inserted first; overwrite its value.
            with self._engine.connect() as conn:
                conn.execute(_secrets.update().where(key).values(value=value, updated_at=_now_iso(), deleted_at=None))
                conn.commit()
        except OperationalError as e:
            return VaultResult(VaultOutcome.TRANSIENT, error=e)
        return VaultResult.ok()

    def start_delete_secret(self, name: str, timeout: Optional[float] = None) -> VaultResult:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(
                    _secrets.update()
                    .where(
                        and_(
                            _secrets.c.vault_name == self.name,
                            _secrets.c.name == name,
                            _secrets.c.deleted_at.is_(None),
                        )
                    )
                    .values(deleted_at=_now_iso())
                )
                conn.commit()
        except OperationalError as e:
            return VaultResult(VaultOutcome.TRANSIENT, error=e)
        if result.rowcount == 0:
            return VaultResult.not_found()
        return VaultResult.ok()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class LocalVaultManager:
    """VaultManager over a SQLAlchemy engine.

    Usage:
        manager = LocalVaultManager("sqlite:///:memory:")
        manager.create(VaultParameters(name="kv-dev-3f2504e0-cmp001", ...))
        vault = manager.open("kv-dev-3f2504e0-cmp001")
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def open(self, name: str) -> LocalSecretVault:
        return LocalSecretVault(name, self.engine)

    def create(self, params: VaultParameters, timeout: Optional[float] = None) -> VaultResult:
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _vaults.insert().values(
                        name=params.name,
                        location=params.location,
                        tenant_id=params.tenant_id,
                        principal_id=params.principal_id,
                        tags=json.dumps(params.tags, sort_keys=True),
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError:
            # Lost a create race -- the vault exists, which is all the caller wanted.
            return VaultResult.ok()
        except OperationalError as e:
            return VaultResult(VaultOutcome.TRANSIENT, error=e)
        return VaultResult.ok()

    def purge_deleted(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Hard-delete secrets soft-deleted before the retention window. Returns rows removed."""
        cutoff = (datetime.now(timezone.utc) - older_than).isoformat()
        with self.engine.connect() as conn:
            result = conn.execute(
                _secrets.delete().where(and_(_secrets.c.deleted_at.is_not(None), _secrets.c.deleted_at < cutoff))
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
