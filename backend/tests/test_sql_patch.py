import pytest

from csvchat.sql_patch import (
    ReadOnlyViolation,
    cast_text_aggregates,
    ensure_read_only,
    expand_star_except,
    patch_sql,
    prepare_preprocess_select,
    rewrite_count_distinct_star,
    strip_code_fences,
    substitute_table,
)

TYPES = {"amount": "text", "price": "text", "qty": "integer"}
TABLE = "csv_1700000000000_abc123xyz"


def testCastWrapsAggregatesOverTextColumns():
    """目的: TEXT列への SUM/AVG には数値キャストを入れ、数値型の列はそのまま残すことを確認する。"""
    sql = 'SELECT SUM(amount), AVG("price"), MAX(qty) FROM t'

    assert cast_text_aggregates(sql, TYPES) == 'SELECT SUM(amount::numeric), AVG("price"::numeric), MAX(qty) FROM t'


def testCastMatchesColumnNamesCaseInsensitively():
    """目的: 列名の大文字小文字が違っていてもキャスト対象になることを確認する。"""
    assert cast_text_aggregates("select sum(Amount) from t", TYPES) == "select sum(Amount::numeric) from t"


def testCastUsesRealForSqlite():
    """目的: SQLite では CAST(... AS REAL) でキャストすることを確認する。"""
    assert cast_text_aggregates("SELECT MIN(amount) FROM t", TYPES, "sqlite") == "SELECT MIN(CAST(amount AS REAL)) FROM t"


def testCastLeavesUnknownColumnsAlone():
    """目的: スキーマに無い列（別名など）への集約は書き換えないことを確認する。"""
    sql = "SELECT SUM(total) FROM (SELECT 1 AS total) s"

    assert cast_text_aggregates(sql, TYPES) == sql


def testRewriteCountDistinctStar():
    """目的: COUNT(DISTINCT *) を全列の ROW(...) に書き換えることを確認する。"""
    sql = "SELECT COUNT(DISTINCT *) FROM t"

    assert rewrite_count_distinct_star(sql, ["a", "b"]) == "SELECT COUNT(DISTINCT ROW(a, b)) FROM t"


def testSubstituteTableAddsAliasForBareReference():
    """目的: 別名の無いテーブル参照はサブクエリに置き換え、元の名前を別名として付けることを確認する。"""
    sub = f"SELECT region FROM {TABLE} WHERE region <> ''"

    out = substitute_table(f"SELECT region FROM {TABLE} WHERE region = 'N'", TABLE, sub)

    assert out == f"SELECT region FROM ({sub}) AS {TABLE} WHERE region = 'N'"


def testSubstituteTableKeepsExistingAliasAndQualifiedColumns():
    """目的: 既存の別名はそのまま使い、table.col 形式の列参照は置き換えないことを確認する。"""
    out = substitute_table(f"SELECT {TABLE}.region FROM {TABLE} t", TABLE, "SELECT 1")

    assert out == f"SELECT {TABLE}.region FROM (SELECT 1) t"


def testExpandStarExcept():
    """目的: * EXCEPT (...) を明示的な列リストへ展開することを確認する。"""
    out = expand_star_except('SELECT * EXCEPT ("Email") FROM t', ["name", "email", "amount"])

    assert out == "SELECT name, amount FROM t"


def testStripCodeFences():
    """目的: ```json ... ``` で囲まれた応答から中身だけを取り出すことを確認する。"""
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT a FROM t",
        "SELECT a FROM t UNION SELECT b FROM u",
        "SELECT region, SUM(amount::numeric) FROM t GROUP BY region",
    ],
)
def testEnsureReadOnlyAcceptsQueries(sql):
    """目的: 単一の SELECT（集合演算含む）は許可されることを確認する。"""
    assert ensure_read_only(sql) == sql


@pytest.mark.parametrize(
    "sql",
    [
        "DROP TABLE t",
        "DELETE FROM t",
        "UPDATE t SET a = '1'",
        "INSERT INTO t (a) VALUES ('1')",
        "SELECT 1; DROP TABLE t",
    ],
)
def testEnsureReadOnlyRejectsWrites(sql):
    """目的: 書き込み文や複数文は実行前に拒否されることを確認する。"""
    with pytest.raises(ReadOnlyViolation):
        ensure_read_only(sql)


def testPreparePreprocessSelectCleansModelOutput():
    """目的: 前処理SQLのコードフェンス・末尾セミコロン・* EXCEPT を整形することを確認する。"""
    raw = f"```sql\nSELECT * EXCEPT (email) FROM {TABLE};\n```"

    assert prepare_preprocess_select(raw, ["name", "email"]) == f"SELECT name FROM {TABLE}"


def testPreparePreprocessSelectRejectsSetOperations():
    """目的: サブクエリに埋め込む前処理SQLは単純な SELECT に限ることを確認する。"""
    with pytest.raises(ReadOnlyViolation):
        prepare_preprocess_select("SELECT a FROM t UNION SELECT a FROM u", ["a"])


def testPatchSqlAppliesAllRewritesInOrder():
    """目的: キャスト・COUNT(DISTINCT *)・テーブル置換を順に適用することを確認する。"""
    sql = f"SELECT SUM(amount), COUNT(DISTINCT *) FROM {TABLE}"

    out = patch_sql(
        sql,
        column_types={"amount": "text", "region": "text"},
        columns=["region", "amount"],
        table_name=TABLE,
        subquery_sql=f"SELECT region, amount FROM {TABLE}",
    )

    assert out == (
        "SELECT SUM(amount::numeric), COUNT(DISTINCT ROW(region, amount)) "
        f"FROM (SELECT region, amount FROM {TABLE}) AS {TABLE}"
    )


def testSubstituteTableReplacesQuotedReference():
    """目的: "csv_..." のようにクォートされたテーブル参照もサブクエリに置き換えることを確認する。"""
    sub = f"SELECT region FROM {TABLE}"

    out = substitute_table(f'SELECT COUNT(*) AS n FROM "{TABLE}"', TABLE, sub)
    aliased = substitute_table(f'SELECT t.region FROM "{TABLE}" t', TABLE, sub)
    qualified = substitute_table(f'SELECT "{TABLE}".region FROM "{TABLE}"', TABLE, sub)

    assert out == f"SELECT COUNT(*) AS n FROM ({sub}) AS {TABLE}"
    assert aliased == f"SELECT t.region FROM ({sub}) t"
    assert qualified == f'SELECT "{TABLE}".region FROM ({sub}) AS {TABLE}'
