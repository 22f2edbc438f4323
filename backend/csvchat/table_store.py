"""
動的テーブルストア

アップロード1件ごとに一意な名前（csv_<msタイムスタンプ>_<ランダム9文字>）のテーブルを作り、
CSVの各列を TEXT 列として保存する。型推論はあえて行わない。
数値として扱う必要がある列はチャット側のSQL補正（sql_patch）で実行時にキャストする。

行の可視性はテーブルごとに付与するアクセスポリシーで制御する:
  - 全テーブルに隠し列 owner_id を持たせる
  - PostgreSQL では RLS を有効化（FORCE）し、owner_id = app.current_user_id の行だけ見せる
  - 読み書き時はトランザクション単位で app.current_user_id を設定する
"""

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass

from sqlalchemy import Column, DateTime, Integer, MetaData, Table, Text, func, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, NoSuchTableError, SQLAlchemyError

logger = logging.getLogger(__name__)

TABLE_NAME_PATTERN = re.compile(r"^csv_\d{13}_[a-z0-9]{9}$")
OWNER_COLUMN = "owner_id"
META_COLUMNS = ("id", "created_at", OWNER_COLUMN)
INSERT_BATCH_SIZE = 500

_RANDOM_ALPHABET = string.ascii_lowercase + string.digits
_INVALID_HEADER_CHARS = re.compile(r"[^a-z0-9_]")


class TableStoreError(RuntimeError):
    pass


class TableNameCollision(TableStoreError):
    pass


class SqlExecutionError(RuntimeError):
    """生成SQLの実行失敗（構文エラー・存在しない列・型エラー・タイムアウト等）。"""


@dataclass(frozen=True)
class AccessPolicy:
    """動的テーブルに付ける行可視性ルール（名前と述語を明示して監査できるようにする）。"""

    name: str
    command: str
    predicate: str

    def ddl(self, table_name: str) -> list[str]:
        return [
            f'ALTER TABLE "{table_name}" ENABLE ROW LEVEL SECURITY',
            f'ALTER TABLE "{table_name}" FORCE ROW LEVEL SECURITY',
            f'CREATE POLICY {self.name} ON "{table_name}" FOR {self.command} '
            f"USING ({self.predicate}) WITH CHECK ({self.predicate})",
        ]

    def to_dict(self) -> dict:
        return {"name": self.name, "command": self.command, "predicate": self.predicate}


OWNER_ROWS_POLICY = AccessPolicy(
    name="csv_owner_rows",
    command="ALL",
    predicate=f"{OWNER_COLUMN} = current_setting('app.current_user_id', true)",
)


@dataclass(frozen=True)
class CreatedTable:
    name: str
    # 元のヘッダ名 -> サニタイズ後の列名
    columns: dict[str, str]
    policy: AccessPolicy


def generate_table_name() -> str:
    suffix = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(9))
    return f"csv_{int(time.time() * 1000)}_{suffix}"


def sanitize_header(name: str) -> str:
    return _INVALID_HEADER_CHARS.sub("_", str(name).strip().lower())


def sanitize_headers(headers: list[str]) -> list[str]:
    """
    目的: ヘッダを小文字・[a-z0-9_] のみの一意な列名へ変換する。

    空になった名前は column_<n>、数字始まりは col_ を前置し、
    メタ列（id/created_at/owner_id）や重複とぶつかる場合は _2, _3 ... を付ける。
    """
    used = set(META_COLUMNS)
    out = []
    for i, header in enumerate(headers):
        base = sanitize_header(header).strip("_") or f"column_{i + 1}"
        if base[0].isdigit():
            base = f"col_{base}"
        name = base
        n = 2
        while name in used:
            name = f"{base}_{n}"
            n += 1
        used.add(name)
        out.append(name)
    return out


def _to_text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class TableStore:
    """CSVデータ用の動的テーブルを作成・投入・参照する。"""

    def __init__(self, engine: Engine):
        self.engine = engine

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def _scope(self, conn, owner_id: str) -> None:
        if self.is_postgres:
            conn.execute(
                text("SELECT set_config('app.current_user_id', :uid, true)"),
                {"uid": str(owner_id)},
            )

    def _table(self, table_name: str) -> Table:
        if not TABLE_NAME_PATTERN.match(table_name or ""):
            raise TableStoreError(f"Invalid table name: {table_name}")
        try:
            return Table(table_name, MetaData(), autoload_with=self.engine)
        except NoSuchTableError as e:
            raise TableStoreError(f"Table not found: {table_name}") from e

    def create_text_table(self, headers: list[str], *, table_name: str | None = None) -> CreatedTable:
        """
        目的: 全データ列を TEXT とするテーブルを作り、アクセスポリシーを付与する。

        同名テーブルが既に存在する場合は上書きせず TableNameCollision を送出する。
        """
        name = table_name or generate_table_name()
        if not TABLE_NAME_PATTERN.match(name):
            raise TableStoreError(f"Invalid table name: {name}")
        if inspect(self.engine).has_table(name):
            raise TableNameCollision(f"Table already exists: {name}")

        sanitized = sanitize_headers(headers)
        table = Table(
            name,
            MetaData(),
            Column("id", Integer, primary_key=True, autoincrement=True),
            *[Column(col, Text, nullable=True) for col in sanitized],
            Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
            Column(OWNER_COLUMN, Text, nullable=False),
        )

        try:
            with self.engine.begin() as conn:
                table.create(bind=conn)
                if self.is_postgres:
                    for stmt in OWNER_ROWS_POLICY.ddl(name):
                        conn.exec_driver_sql(stmt)
        except SQLAlchemyError as e:
            if inspect(self.engine).has_table(name):
                raise TableNameCollision(f"Table already exists: {name}") from e
            raise TableStoreError(f"Failed to create table {name}: {type(e).__name__}") from e

        logger.info("Created table %s with %d text columns", name, len(sanitized))
        return CreatedTable(name=name, columns=dict(zip(headers, sanitized)), policy=OWNER_ROWS_POLICY)

    def insert(self, table_name: str, columns: dict[str, str], rows: list[dict], *, owner_id: str) -> int:
        """目的: rows（元ヘッダ名キー）を TEXT 値としてまとめて投入し、件数を返す。"""
        table = self._table(table_name)
        payload = [
            {**{col: _to_text(row.get(header)) for header, col in columns.items()}, OWNER_COLUMN: str(owner_id)}
            for row in rows
        ]
        try:
            with self.engine.begin() as conn:
                self._scope(conn, owner_id)
                for start in range(0, len(payload), INSERT_BATCH_SIZE):
                    conn.execute(table.insert(), payload[start : start + INSERT_BATCH_SIZE])
        except SQLAlchemyError as e:
            raise TableStoreError(f"Failed to insert rows into {table_name}: {type(e).__name__}") from e
        return len(payload)

    def drop(self, table_name: str) -> None:
        if not TABLE_NAME_PATTERN.match(table_name or ""):
            raise TableStoreError(f"Invalid table name: {table_name}")
        with self.engine.begin() as conn:
            conn.exec_driver_sql(f'DROP TABLE IF EXISTS "{table_name}"')
        logger.info("Dropped table %s", table_name)

    def describe(self, table_name: str) -> list[dict]:
        """目的: 列名・型・NULL可否を返す（owner_id は利用者に見せない）。"""
        self._table(table_name)
        return [
            {"name": c["name"], "type": str(c["type"]).lower(), "nullable": bool(c.get("nullable", True))}
            for c in inspect(self.engine).get_columns(table_name)
            if c["name"] != OWNER_COLUMN
        ]

    def fetch_page(self, table_name: str, *, owner_id: str, offset: int, limit: int) -> tuple[list[dict], int]:
        """目的: id 昇順で1ページ分の行と総件数を返す。"""
        table = self._table(table_name)
        visible = [c for c in table.columns if c.name != OWNER_COLUMN]
        owned = table.c[OWNER_COLUMN] == str(owner_id)
        with self.engine.connect() as conn:
            self._scope(conn, owner_id)
            total = conn.execute(select(func.count()).select_from(table).where(owned)).scalar_one()
            result = conn.execute(
                select(*visible).where(owned).order_by(table.c.id).offset(offset).limit(limit)
            )
            rows = [dict(r) for r in result.mappings()]
        return rows, int(total)

    def execute_read(self, sql: str, *, owner_id: str, timeout_seconds: float | None = None) -> list[dict]:
        """
        目的: 生成SQLを読み取り専用トランザクションで実行し、行を dict のリストで返す。

        PostgreSQL では READ ONLY トランザクション・statement_timeout・RLS用の利用者IDを設定する。
        実行に失敗した場合（タイムアウト含む）は SqlExecutionError を送出する。
        """
        try:
            with self.engine.connect() as conn:
                if self.is_postgres:
                    conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                    if timeout_seconds:
                        conn.execute(
                            text("SELECT set_config('statement_timeout', :ms, true)"),
                            {"ms": str(int(timeout_seconds * 1000))},
                        )
                self._scope(conn, owner_id)
                # % をドライバのプレースホルダとして解釈させない（LIKE '%x%' や剰余演算子）
                result = conn.exec_driver_sql(sql, execution_options={"no_parameters": True})
                if not result.returns_rows:
                    return []
                rows = [dict(r) for r in result.mappings()]
                conn.rollback()
                return rows
        except DBAPIError as e:
            message = str(e.orig).strip().splitlines()[0] if e.orig is not None else str(e)
            raise SqlExecutionError(message or "SQL execution failed") from e
        except SQLAlchemyError as e:
            raise SqlExecutionError(f"SQL execution failed: {type(e).__name__}") from e
