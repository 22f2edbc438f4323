"""
AIによる列分類（PII列・通貨列の検出）とデータセット要約

LLMの出力は助言扱い。前処理が参照するのは email_columns / currency_columns の列名だけで、
summary や modified_headers は表示用にそのまま返す。
"""

import json
import logging
import re
from dataclasses import dataclass, field

from .llm import LLMClient, LLMError
from .quality import is_missing

logger = logging.getLogger(__name__)

SAMPLE_ROW_LIMIT = 5
FAILED_SUMMARY = "Failed to generate AI summary"

# 列名が金額を示唆するか（Quantity/Count のような単なる数値列は含めない）
_MONEY_NAME = re.compile(
    r"(amount|price|cost|total|revenue|salary|fee|payment|balance|spend)",
    re.IGNORECASE,
)
_CURRENCY_VALUE = re.compile(
    r"[$€£¥₹₩₽₺₦₱]|\b(USD|EUR|GBP|JPY|INR|PKR|AUD|CAD|CNY|Rs)\b",
)
_CODE_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\s*```$")

SYSTEM_PROMPT = "You are a helpful data analyst assistant."


@dataclass
class AIColumnClassification:
    summary: str
    email_columns: list[str] = field(default_factory=list)
    currency_columns: list[dict] = field(default_factory=list)
    modified_headers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "emailColumns": list(self.email_columns),
            "currencyColumns": [dict(c) for c in self.currency_columns],
            "modifiedHeaders": list(self.modified_headers),
        }


def select_sample_rows(rows: list[dict], limit: int = SAMPLE_ROW_LIMIT) -> list[dict]:
    """欠損でない値を1つ以上持つ行を先頭から最大 limit 件選ぶ。"""
    out = []
    for row in rows:
        if any(not is_missing(v) for v in row.values()):
            out.append(row)
        if len(out) >= limit:
            break
    return out


def build_classification_prompt(
    headers: list[str],
    sample_rows: list[dict],
    preprocessing_steps: list[str] | None = None,
) -> str:
    """目的: ヘッダとサンプル行から、要約＋PII列＋通貨列を JSON で返させるプロンプトを組み立てる。"""
    preview = "\n".join(
        f"{i + 1}. {json.dumps(row, ensure_ascii=False, default=str)}" for i, row in enumerate(sample_rows)
    )
    note = ""
    if preprocessing_steps:
        note = (
            "Note: The following preprocessing has already been applied to the dataset:\n- "
            + "\n- ".join(preprocessing_steps)
        )

    return (
        "You are a data analyst assistant.\n"
        "You are given CSV headers and a few sample rows.\n"
        "Provide a high-level human-readable summary of what this dataset seems to represent.\n"
        "Do not assume column types or units. Do not mention values in the rows. Plain text only.\n"
        "\n"
        f"{note}\n"
        "\n"
        "Additionally:\n"
        "- Identify columns that likely contain email addresses or other personal contact data "
        "(e.g. mobile numbers) and return them as a list.\n"
        "- Identify columns that contain or indicate currency. Only mark a column as currency if:\n"
        "  1) The column name explicitly suggests money (e.g., amount, price, cost, total), OR\n"
        "  2) The values contain currency symbols (e.g., $, ₹, €, PKR, INR).\n"
        "- Do NOT treat numeric columns without monetary indicators as currency "
        "(for example, Quantity or Count should NOT be currency).\n"
        "- Do NOT treat numeric columns like Quantity, Count, or Units as currency "
        "even if other columns contain currency symbols.\n"
        "- For each currency column, include the detected currency name or symbol.\n"
        "- Suggest modified headers where currency columns are renamed as "
        "'column_name (currency name or symbol)' for clarity.\n"
        "\n"
        "Return ONLY a JSON object like this:\n"
        "{\n"
        '  "summary": "High-level description of dataset including preprocessing notes",\n'
        '  "emailColumns": ["column1", "column2"],\n'
        '  "currencyColumns": [\n'
        '    { "name": "column3", "currency": "USD" },\n'
        '    { "name": "column4", "currency": "INR" }\n'
        "  ],\n"
        '  "modifiedHeaders": ["col1", "col2 (currency name or symbol)", "col3"]\n'
        "}\n"
        "\n"
        f"Headers: {', '.join(headers)}\n"
        "Sample Rows:\n"
        f"{preview}"
    )


def _column_name(item) -> str | None:
    if isinstance(item, str):
        return item
    if isinstance(item, dict) and isinstance(item.get("name"), str):
        return item["name"]
    return None


def enforce_currency_policy(
    headers: list[str],
    sample_rows: list[dict],
    currency_columns: list[dict],
) -> list[dict]:
    """
    目的: モデルが返した通貨列を、列名またはサンプル値の根拠がある列だけに絞る。

    列名が金額を示唆する、またはその列のサンプル値に通貨記号が含まれる場合のみ残す。
    """
    kept = []
    for col in currency_columns:
        name = col.get("name")
        if name not in headers:
            continue
        name_hint = bool(_MONEY_NAME.search(name))
        value_hint = any(
            isinstance(row.get(name), str) and _CURRENCY_VALUE.search(row[name]) for row in sample_rows
        )
        if name_hint or value_hint:
            kept.append(col)
        else:
            logger.info("Dropping currency flag without monetary evidence: %s", name)
    return kept


def parse_classification(raw: str, headers: list[str], sample_rows: list[dict]) -> AIColumnClassification:
    """
    目的: LLMの生出力を AIColumnClassification へ変換する。

    JSONとして読めない場合は summary=生テキスト・列リスト空・modified_headers=headers に縮退する。
    """
    text = _CODE_FENCE_END.sub("", _CODE_FENCE_START.sub("", (raw or "").strip())).strip()
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning("Failed to parse AI classification JSON, returning raw text summary.")
        return AIColumnClassification(summary=raw, modified_headers=list(headers))

    if not isinstance(data, dict):
        return AIColumnClassification(summary=raw, modified_headers=list(headers))

    email_columns = []
    for item in data.get("emailColumns") or []:
        name = _column_name(item)
        if name in headers and name not in email_columns:
            email_columns.append(name)

    currency_columns = []
    for item in data.get("currencyColumns") or []:
        name = _column_name(item)
        if not name or any(c["name"] == name for c in currency_columns):
            continue
        currency = item.get("currency") if isinstance(item, dict) else None
        currency_columns.append({"name": name, "currency": str(currency or "unknown")})
    currency_columns = enforce_currency_policy(headers, sample_rows, currency_columns)

    modified = data.get("modifiedHeaders")
    if not isinstance(modified, list) or len(modified) != len(headers):
        currency_by_name = {c["name"]: c["currency"] for c in currency_columns}
        modified = [f"{h} ({currency_by_name[h]})" if h in currency_by_name else h for h in headers]

    summary = data.get("summary")
    return AIColumnClassification(
        summary=summary if isinstance(summary, str) else "No summary",
        email_columns=email_columns,
        currency_columns=currency_columns,
        modified_headers=[str(h) for h in modified],
    )


def classify_columns(
    headers: list[str],
    rows: list[dict],
    llm: LLMClient,
    *,
    preprocessing_steps: list[str] | None = None,
) -> AIColumnClassification:
    """
    目的: サンプル（最大5行）をLLMへ送り、列分類と要約を得る。

    LLM呼び出し自体が失敗してもアップロード全体は止めず、安全な既定値を返す。
    """
    sample = select_sample_rows(rows)
    prompt = build_classification_prompt(headers, sample, preprocessing_steps)
    try:
        raw = llm.complete(
            SYSTEM_PROMPT,
            [{"role": "user", "content": prompt}],
            max_tokens=500,
            temperature=0.3,
        )
    except LLMError as e:
        logger.warning("AI classification failed: %s (%s)", e.code, e)
        return AIColumnClassification(summary=FAILED_SUMMARY, modified_headers=list(headers))

    logger.debug("AI classification raw response: %s", raw)
    return parse_classification(raw, headers, sample)
