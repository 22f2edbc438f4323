import json
from dataclasses import asdict, dataclass

# 欠損率がこれを「超える」列を低価値列とする（環境変数 LOW_VALUE_MISSING_RATIO で上書き可）
LOW_VALUE_MISSING_RATIO = 0.30


@dataclass(frozen=True)
class DataQualitySummary:
    total_rows: int
    total_columns: int
    duplicate_count: int
    empty_row_count: int
    missing_value_summary: dict[str, int]
    low_value_columns: list[str]
    rows_with_missing_values: int

    def to_dict(self) -> dict:
        """APIレスポンス用（キーはフロントエンドと同じ camelCase）。"""
        d = asdict(self)
        return {
            "totalRows": d["total_rows"],
            "totalColumns": d["total_columns"],
            "duplicateCount": d["duplicate_count"],
            "emptyRowCount": d["empty_row_count"],
            "missingValueSummary": d["missing_value_summary"],
            "lowValueColumns": d["low_value_columns"],
            "rowsWithMissingValues": d["rows_with_missing_values"],
        }


def is_missing(value) -> bool:
    """None、または trim 後に空文字になる文字列だけを欠損とみなす（0 や "0" は欠損ではない）。"""
    if value is None:
        return True
    return isinstance(value, str) and value.strip() == ""


def row_key(row: dict) -> str:
    """重複判定用のキー。列の並び順に依存しないよう key でソートして直列化する。"""
    return json.dumps(row, sort_keys=True, ensure_ascii=False, default=str)


def generate_data_quality_summary(
    headers: list[str],
    rows: list[dict],
    *,
    low_value_ratio: float = LOW_VALUE_MISSING_RATIO,
) -> DataQualitySummary:
    """
    目的: 現在の headers/rows からデータ品質サマリを毎回作り直す（副作用なし・キャッシュなし）。

    - duplicate_count: 2回目以降に現れた完全一致行の数（= 総行数 - ユニーク行数）
    - empty_row_count: すべての列が欠損の行
    - low_value_columns: 欠損数 / 総行数 > low_value_ratio の列（総行数0なら空）
    """
    total_rows = len(rows)
    seen: set[str] = set()
    duplicate_count = 0
    missing = {h: 0 for h in headers}
    rows_with_missing = 0
    empty_rows = 0

    for row in rows:
        key = row_key(row)
        if key in seen:
            duplicate_count += 1
        seen.add(key)

        row_has_missing = False
        non_empty = 0
        for h in headers:
            if is_missing(row.get(h)):
                missing[h] += 1
                row_has_missing = True
            else:
                non_empty += 1

        if row_has_missing:
            rows_with_missing += 1
        if non_empty == 0:
            empty_rows += 1

    low_value = []
    if total_rows > 0:
        low_value = [h for h in headers if missing[h] / total_rows > low_value_ratio]

    return DataQualitySummary(
        total_rows=total_rows,
        total_columns=len(headers),
        duplicate_count=duplicate_count,
        empty_row_count=empty_rows,
        missing_value_summary=missing,
        low_value_columns=low_value,
        rows_with_missing_values=rows_with_missing,
    )
