from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fieldllm.logging import get_logger
from fieldllm.storage.models import ProviderRecord, Session, User

_PROVIDER_COLUMNS = (
    "id, name, provider, model, api_key_encrypted, is_default, use_cases, "
    "max_tokens, is_active, account_id"
)


class PostgresStore:
    """Postgres-backed reads of users, sessions and provider configuration."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the tables this service reads exist before serving requests."""

        required_tables = ["app_user", "auth_session", "llm_providers"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _provider_from_row(row: Dict[str, Any]) -> ProviderRecord:
        return ProviderRecord.from_dict(dict(row))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        account_id = row.get("account_id")
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "user",
            account_id=str(account_id) if account_id is not None else None,
            created_at=row.get("created_at", datetime.utcnow()),
            is_active=row.get("is_active", True),
            meta=row.get("meta"),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at", datetime.utcnow()),
            expires_at=row.get("expires_at", datetime.utcnow()),
            user_agent=row.get("user_agent"),
            meta=row.get("meta"),
        )

    def list_providers(self, account_id: Optional[str]) -> List[ProviderRecord]:
        """Active providers owned by ``account_id`` plus global ones.

        The encrypted key column is excluded; credentials are fetched one
        provider at a time through ``get_provider_api_key``.
        """
        columns = _PROVIDER_COLUMNS.replace("api_key_encrypted, ", "")
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {columns}
                FROM llm_providers
                WHERE is_active = TRUE AND (account_id IS NULL OR account_id = %s)
                ORDER BY created_at ASC
                """,
                (account_id,),
            ).fetchall()
        return [self._provider_from_row(row) for row in rows]

    def get_provider_api_key(self, provider_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT api_key_encrypted FROM llm_providers WHERE id = %s",
                (provider_id,),
            ).fetchone()
        if not row:
            return None
        return row.get("api_key_encrypted")

    def upsert_provider(self, provider: ProviderRecord) -> ProviderRecord:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO llm_providers ({_PROVIDER_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    provider = EXCLUDED.provider,
                    model = EXCLUDED.model,
                    api_key_encrypted = EXCLUDED.api_key_encrypted,
                    is_default = EXCLUDED.is_default,
                    use_cases = EXCLUDED.use_cases,
                    max_tokens = EXCLUDED.max_tokens,
                    is_active = EXCLUDED.is_active,
                    account_id = EXCLUDED.account_id
                """,
                (
                    provider.id,
                    provider.name,
                    provider.provider,
                    provider.model,
                    provider.api_key_encrypted,
                    provider.is_default,
                    list(provider.use_cases),
                    provider.max_tokens,
                    provider.is_active,
                    provider.account_id,
                ),
            )
            conn.commit()
        self.logger.info(
            "provider_upserted",
            provider_id=provider.id,
            account_id=provider.account_id,
            family=provider.provider,
        )
        return provider

    def close(self) -> None:
        self.pool.close()
