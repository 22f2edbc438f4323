"""
LLMが生成したSQLの決定的な補正

どのLLM経路で作られたSQLにも同じ順序で適用する:
  1. TEXT列への SUM/AVG/MIN/MAX を数値キャストで包む（保存列は全て TEXT のため）
  2. COUNT(DISTINCT *) を COUNT(DISTINCT ROW(列1, 列2, ...)) に書き換える
  3. 前処理サブクエリがある場合、元テーブル名の参照をサブクエリに置き換える
最後に sqlglot で「単一の読み取り専用文」であることを確認してから実行へ回す。
"""

import re

import sqlglot
from sqlglot import expressions as exp

_AGGREGATE = re.compile(
    r'\b(SUM|AVG|MIN|MAX)\s*\(\s*("?)([A-Za-z_][A-Za-z0-9_]*)\2\s*\)',
    re.IGNORECASE,
)
_COUNT_DISTINCT_STAR = re.compile(r"\bCOUNT\s*\(\s*DISTINCT\s*\*\s*\)", re.IGNORECASE)
_STAR_EXCEPT = re.compile(r"\*\s*EXCEPT\s*\(([^)]*)\)", re.IGNORECASE)
_CODE_FENCE_START = re.compile(r"^```[a-zA-Z]*\s*")
_CODE_FENCE_END = re.compile(r"\s*```$")

# テーブル参照の直後に来ても「別名」ではない語
_NOT_ALIAS = {
    "where", "group", "order", "limit", "offset", "join", "inner", "left", "right",
    "full", "cross", "natural", "on", "using", "union", "intersect", "except",
    "having", "window", "fetch", "for", "lateral",
}

_SQLGLOT_DIALECTS = {"postgresql": "postgres", "postgres": "postgres", "sqlite": "sqlite"}


class ReadOnlyViolation(ValueError):
    """実行しようとしたSQLが単一の読み取り専用文ではない。"""


def strip_code_fences(raw: str) -> str:
    """```json / ``` で囲まれた応答から中身だけを取り出す。"""
    text = (raw or "").strip()
    text = _CODE_FENCE_START.sub("", text)
    text = _CODE_FENCE_END.sub("", text)
    return text.strip()


def _is_textual(type_name: str | None) -> bool:
    t = (type_name or "").lower()
    return "text" in t or "char" in t


def numeric_cast(column: str, dialect: str = "postgresql") -> str:
    if dialect == "sqlite":
        return f"CAST({column} AS REAL)"
    return f"{column}::numeric"


def cast_text_aggregates(sql: str, column_types: dict[str, str], dialect: str = "postgresql") -> str:
    """
    目的: スキーマ上 TEXT の列に対する集約関数へ数値キャストを挿入する。

    例: SELECT SUM(amount) FROM t -> SELECT SUM(amount::numeric) FROM t
    型が分からない列・数値型の列はそのまま残す。
    """
    types = {k.lower(): v for k, v in column_types.items()}

    def replace(m: re.Match) -> str:
        func, quote, col = m.group(1), m.group(2), m.group(3)
        if not _is_textual(types.get(col.lower())):
            return m.group(0)
        return f"{func}({numeric_cast(f'{quote}{col}{quote}', dialect)})"

    return _AGGREGATE.sub(replace, sql)


def rewrite_count_distinct_star(sql: str, columns: list[str]) -> str:
    """COUNT(DISTINCT *) は PostgreSQL で無効なため、全列の ROW(...) に書き換える。"""
    if not columns:
        return sql
    row = ", ".join(columns)
    return _COUNT_DISTINCT_STAR.sub(f"COUNT(DISTINCT ROW({row}))", sql)


def substitute_table(sql: str, table_name: str, subquery_sql: str) -> str:
    """
    目的: 元テーブル名への参照（"csv_..." のようなクォート付きも含む。table.col のような修飾は除く）をサブクエリへ置き換える。

    別名が付いていない参照には元のテーブル名を別名として付け、列の修飾が壊れないようにする。
    """
    pattern = re.compile(rf'(?<![\w."])("?){re.escape(table_name)}\1(?![\w"])(?!\s*\.)')
    alias = re.compile(r"\s+(?:AS\s+)?([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)

    def replace(m: re.Match) -> str:
        following = alias.match(sql, m.end())
        if following and following.group(1).lower() not in _NOT_ALIAS:
            return f"({subquery_sql})"
        return f"({subquery_sql}) AS {table_name}"

    return pattern.sub(replace, sql)


def expand_star_except(sql: str, columns: list[str]) -> str:
    """SELECT * EXCEPT (a, b) を PostgreSQL で使える明示的な列リストへ展開する。"""

    def replace(m: re.Match) -> str:
        excluded = {c.strip().strip('"').lower() for c in m.group(1).split(",") if c.strip()}
        kept = [c for c in columns if c.lower() not in excluded]
        return ", ".join(kept) if kept else "*"

    return _STAR_EXCEPT.sub(replace, sql)


def _sqlglot_dialect(dialect: str) -> str:
    return _SQLGLOT_DIALECTS.get(dialect, "postgres")


def ensure_read_only(sql: str, dialect: str = "postgresql", *, select_only: bool = False) -> str:
    """
    目的: SQLが単一の読み取り専用文であることを構文木で確認する。

    select_only=True の場合は UNION 等を含まない単純な SELECT のみ許可する（前処理サブクエリ用）。
    """
    try:
        statements = [s for s in sqlglot.parse(sql, read=_sqlglot_dialect(dialect)) if s is not None]
    except sqlglot.errors.SqlglotError as e:
        raise ReadOnlyViolation("SQL parse error: only valid SELECT queries are allowed") from e

    if len(statements) != 1:
        raise ReadOnlyViolation("Only a single SQL statement is allowed")

    stmt = statements[0]
    allowed = (exp.Select,) if select_only else (exp.Select, exp.Union, exp.Intersect, exp.Except)
    if not isinstance(stmt, allowed):
        raise ReadOnlyViolation(f"Only SELECT queries are allowed, got: {type(stmt).__name__.upper()}")

    if stmt.find(exp.Insert, exp.Update, exp.Delete, exp.Drop, exp.Create):
        raise ReadOnlyViolation("Data-modifying statements are not allowed")

    return sql


def prepare_preprocess_select(raw: str, columns: list[str], dialect: str = "postgresql") -> str:
    """
    目的: 前処理指示から生成された SELECT を、サブクエリとして埋め込める形に整える。

    コードフェンスと末尾の ; を除き、* EXCEPT (...) を展開し、単純な SELECT であることを確認する。
    """
    sql = strip_code_fences(raw).rstrip().rstrip(";").strip()
    sql = expand_star_except(sql, columns)
    return ensure_read_only(sql, dialect, select_only=True)


def patch_sql(
    sql: str,
    *,
    column_types: dict[str, str],
    columns: list[str],
    table_name: str | None = None,
    subquery_sql: str | None = None,
    dialect: str = "postgresql",
) -> str:
    """目的: 補正3種を固定順で適用した最終SQLを返す。"""
    patched = cast_text_aggregates(sql, column_types, dialect)
    patched = rewrite_count_distinct_star(patched, columns)
    if table_name and subquery_sql:
        patched = substitute_table(patched, table_name, subquery_sql)
    return patched
