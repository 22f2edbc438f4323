"""
前処理エンジン

AI分類の結果（PII列・通貨列）とデータ品質サマリを使ってデータセットを整える。
手順の順序は固定:
  1. PII列を削除
  2. 通貨列から数字・"."・"-" 以外を除去
  3. 品質サマリを作り直し、低価値列（欠損率 > しきい値）を削除
  4. 完全一致の重複行を削除（最初の1行を残す）
  5. 全セルを trim → 数値 → 日付(ISO-8601) → 文字列 の順に型変換

同じ入力には同じ出力を返し、処理済みのデータに再適用しても変化しない。
1セルの変換失敗で例外を投げることはない（元の文字列を trim して残す）。
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .quality import LOW_VALUE_MISSING_RATIO, generate_data_quality_summary, row_key

_NON_NUMERIC = re.compile(r"[^0-9.\-]+")
_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

# fromisoformat で読めない表記のうち、よく見るもの
_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%B %d, %Y",
)


@dataclass
class PreprocessReport:
    removed_pii_columns: list[str] = field(default_factory=list)
    cleaned_currency_columns: list[str] = field(default_factory=list)
    removed_low_value_columns: list[str] = field(default_factory=list)
    removed_duplicate_rows: int = 0
    low_value_ratio: float = LOW_VALUE_MISSING_RATIO

    def steps(self) -> list[str]:
        """要約プロンプトに渡す「適用済み前処理」の説明文。"""
        out = []
        if self.removed_pii_columns:
            out.append("Removed personal data columns: " + ", ".join(self.removed_pii_columns))
        if self.cleaned_currency_columns:
            out.append(
                "Stripped currency symbols and converted to numbers: "
                + ", ".join(self.cleaned_currency_columns)
            )
        if self.removed_low_value_columns:
            out.append(
                f"Removed columns with more than {self.low_value_ratio:.0%} missing values: "
                + ", ".join(self.removed_low_value_columns)
            )
        if self.removed_duplicate_rows:
            out.append(f"Removed {self.removed_duplicate_rows} duplicate rows")
        out.append("Trimmed values and standardized numbers and dates")
        return out

    def to_dict(self) -> dict:
        return {
            "removedPiiColumns": self.removed_pii_columns,
            "cleanedCurrencyColumns": self.cleaned_currency_columns,
            "removedLowValueColumns": self.removed_low_value_columns,
            "removedDuplicateRows": self.removed_duplicate_rows,
        }


def _names(columns) -> list[str]:
    """列指定は "name" 文字列でも {"name": ...} でも受け付ける。"""
    out = []
    for col in columns or []:
        name = col if isinstance(col, str) else (col.get("name") if isinstance(col, dict) else None)
        if isinstance(name, str):
            out.append(name)
    return out


def _project(rows: list[dict], headers: list[str]) -> list[dict]:
    return [{h: row.get(h) for h in headers} for row in rows]


def to_number(value: str):
    """数値として読めれば int/float を返す（整数値は int）。読めなければ None。"""
    if not _NUMBER.match(value):
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    # 1e999 のような inf は JSON にできないので数値扱いしない
    if not math.isfinite(number):
        return None
    if number.is_integer() and abs(number) < 2**53:
        return int(number)
    return number


def to_iso_timestamp(value: str) -> str | None:
    """日付として読めれば UTC の ISO-8601（ミリ秒・Z付き）文字列を返す。"""
    parsed = None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        parsed = parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        # 0001-01-01T00:00:00+01:00 のように UTC に直すと範囲外になる日時
        return None
    return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coerce_value(value):
    """1セル分の型変換。失敗しても例外にせず trim 済みの元の値を返す。"""
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if trimmed == "":
        return trimmed
    number = to_number(trimmed)
    if number is not None:
        return number
    iso = to_iso_timestamp(trimmed)
    if iso is not None:
        return iso
    return trimmed


def strip_currency(value):
    # 変換済みの数値には触れない（再適用しても変化しない）
    if value is None or value == "" or isinstance(value, (int, float)):
        return value
    return _NON_NUMERIC.sub("", str(value))


def preprocess_dataset(
    headers: list[str],
    rows: list[dict],
    *,
    email_columns=None,
    currency_columns=None,
    low_value_ratio: float = LOW_VALUE_MISSING_RATIO,
) -> tuple[list[str], list[dict], PreprocessReport]:
    """
    目的: 前処理5手順を固定順で適用し、(new_headers, new_rows, report) を返す。

    低価値列の判定は PII 列削除の「後」に行うため、削除済みのPII列が低価値列として
    二重に報告されることはない。
    """
    report = PreprocessReport(low_value_ratio=low_value_ratio)
    out_headers = list(headers)
    out_rows = [dict(r) for r in rows]

    # 1) PII列
    pii = set(_names(email_columns))
    report.removed_pii_columns = [h for h in out_headers if h in pii]
    if report.removed_pii_columns:
        out_headers = [h for h in out_headers if h not in pii]
        out_rows = _project(out_rows, out_headers)

    # 2) 通貨列
    currency = [c for c in _names(currency_columns) if c in out_headers]
    report.cleaned_currency_columns = currency
    for row in out_rows:
        for col in currency:
            row[col] = strip_currency(row.get(col))

    # 3) 低価値列（現在の状態から品質サマリを作り直す）
    summary = generate_data_quality_summary(out_headers, out_rows, low_value_ratio=low_value_ratio)
    report.removed_low_value_columns = list(summary.low_value_columns)
    if report.removed_low_value_columns:
        low = set(report.removed_low_value_columns)
        out_headers = [h for h in out_headers if h not in low]
    out_rows = _project(out_rows, out_headers)

    # 4) 重複行
    seen: set[str] = set()
    unique_rows = []
    for row in out_rows:
        key = row_key(row)
        if key in seen:
            continue
        seen.add(key)
        unique_rows.append(row)
    report.removed_duplicate_rows = len(out_rows) - len(unique_rows)

    # 5) 型変換
    out_rows = [{h: coerce_value(row.get(h)) for h in out_headers} for row in unique_rows]

    return out_headers, out_rows, report
