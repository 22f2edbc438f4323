"""
自然言語 -> SQL チャットエンジン

1ターンの処理は次の順で逐次実行する（LLM呼び出しは常に高々1つ）:

  SCHEMA_LOOKUP -> (INTENT_CLASSIFY -> PREPROCESS_SQL_GEN) -> CONTEXT_BUILD
  -> LLM_GENERATE -> PARSE_JSON -> [LLM_REPAIR -> PARSE_JSON] -> SQL_PATCH
  -> SQL_EXECUTE -> RESULT_NORMALIZE -> RESPOND

回復可能な失敗（LLMの出力がJSONでない、SQLの実行失敗、LLMの一時的な失敗）は
レスポンスの中身に詰めて返し、リクエスト自体は失敗させない。
認証・所有者チェックはこのモジュールを呼ぶ前（API層）で済ませておくこと。
"""

import json
import logging
from dataclasses import dataclass, field

from .charts import CHART_TYPES, normalize_chart_data
from .config import ChatConfig
from .llm import LLMClient, LLMError
from .sql_patch import (
    ReadOnlyViolation,
    ensure_read_only,
    patch_sql,
    prepare_preprocess_select,
    strip_code_fences,
)
from .table_store import OWNER_COLUMN, SqlExecutionError, TableStore

logger = logging.getLogger(__name__)

INTENT_QUERY = "query"
INTENT_PREPROCESS = "preprocess"
NO_ROWS = "No rows returned"
PREPROCESSED_ALIAS = "preprocessed"

INTENT_SYSTEM_PROMPT = (
    "Classify the user's message about a tabular dataset. "
    "Reply with exactly one word:\n"
    "- preprocess: the user wants to clean, filter, drop, rename or transform the data before analysis\n"
    "- query: the user asks a question about the data or wants a chart"
)
REPAIR_SYSTEM_PROMPT = "Return ONLY valid JSON. No explanations, no markdown."


@dataclass
class ChatTurnResult:
    explanation: str
    sql: str | None = None
    result: list | str | None = None
    sql_error: str | None = None
    chart_data: dict | None = None
    raw_response: str = ""
    intent: str = INTENT_QUERY
    debug: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "explanation": self.explanation,
            "sql": self.sql,
            "result": self.result,
            "sqlError": self.sql_error,
            "chartData": self.chart_data,
            "debug": {"rawResponse": self.raw_response, "intent": self.intent, **self.debug},
        }


def parse_model_response(text: str) -> dict | None:
    """
    目的: {sql, explanation, chartConfig} 形式のJSONを読み取る。

    JSONでない、またはオブジェクトでない場合は None（呼び出し側で修復へ回す）。
    """
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    sql = data.get("sql")
    explanation = data.get("explanation")
    chart = data.get("chartConfig")
    return {
        "sql": sql.strip() if isinstance(sql, str) and sql.strip() else None,
        "explanation": explanation if isinstance(explanation, str) else "",
        "chartConfig": chart if isinstance(chart, dict) else None,
    }


def truncate_history(messages, limit: int) -> list[dict]:
    """会話履歴から role/content だけを取り出し、末尾 limit 件に絞る。"""
    history = []
    for m in messages or []:
        role = m.get("role") if isinstance(m, dict) else getattr(m, "role", None)
        content = m.get("content") if isinstance(m, dict) else getattr(m, "content", None)
        if role in ("user", "assistant") and isinstance(content, str):
            history.append({"role": role, "content": content})
    return history[-limit:] if limit > 0 else []


def build_system_prompt(
    *,
    table_name: str,
    file_name: str,
    file_description: str | None,
    row_count,
    columns: list[dict],
    sample_rows: list[dict] | None,
    dialect_label: str = "PostgreSQL",
) -> str:
    column_lines = "\n".join(f"- {c['name']} ({c['type']})" for c in columns) if columns else "Unknown"
    sample = json.dumps(sample_rows, indent=2, ensure_ascii=False, default=str) if sample_rows else "Unavailable"
    return (
        f'You are a data analyst assistant with access to a {dialect_label} table "{table_name}".\n'
        f"File: {file_name} ({file_description or 'No description'})\n"
        f"Rows: {row_count}\n"
        "Columns:\n"
        f"{column_lines}\n"
        "\n"
        "Sample:\n"
        f"{sample}\n"
        "\n"
        "When answering:\n"
        "- ALWAYS return valid JSON like:\n"
        "  {\n"
        '    "sql": "SELECT ...",  // or null if not needed\n'
        '    "explanation": "Short, concise answer",\n'
        '    "chartConfig": {\n'
        '      "type": "bar|line|pie|area",\n'
        '      "title": "Chart Title",\n'
        '      "xAxis": "column_name",\n'
        '      "yAxis": "column_name",\n'
        '      "groupBy": "column_name" // optional\n'
        "    }\n"
        "  }\n"
        f"- SQL must be valid {dialect_label}.\n"
        "- CAST text columns to numeric if aggregating (SUM, AVG, MIN, MAX).\n"
        "- Only read data. Never modify the table.\n"
        "- Only output JSON. No markdown, no extra commentary."
    )


def build_preprocess_prompt(table_name: str, columns: list[str], dialect_label: str = "PostgreSQL") -> str:
    return (
        "You translate data preprocessing instructions into one read-only "
        f'{dialect_label} SELECT statement over the table "{table_name}".\n'
        f"Columns: {', '.join(columns)}\n"
        "- Project only the columns that make sense for the instruction; list them explicitly.\n"
        "- Do not use SELECT * EXCEPT, CTEs, semicolons or data-modifying statements.\n"
        "- Return only the SQL statement, no explanation and no markdown."
    )


class ChatQueryEngine:
    """1回のユーザーメッセージを SQL 実行結果付きの回答へ変換する。"""

    def __init__(self, store: TableStore, llm: LLMClient, config: ChatConfig):
        self.store = store
        self.llm = llm
        self.config = config
        self.dialect = store.engine.dialect.name
        self.dialect_label = "SQLite" if self.dialect == "sqlite" else "PostgreSQL"

    # ---- LLM 呼び出し ----

    def _complete(self, system_prompt: str, messages: list[dict], *, max_tokens: int, temperature: float) -> str:
        return self.llm.complete(system_prompt, messages, max_tokens=max_tokens, temperature=temperature)

    def classify_intent(self, message: str) -> str:
        """preprocess / query のどちらかを返す。分類に失敗した場合は query とみなす。"""
        try:
            raw = self._complete(
                INTENT_SYSTEM_PROMPT,
                [{"role": "user", "content": message}],
                max_tokens=5,
                temperature=0,
            )
        except LLMError as e:
            logger.warning("Intent classification failed (%s); treating message as a query", e.code)
            return INTENT_QUERY
        return INTENT_PREPROCESS if "preprocess" in (raw or "").strip().lower() else INTENT_QUERY

    def generate_preprocess_sql(self, message: str, table_name: str, columns: list[str]) -> str | None:
        """前処理指示を読み取り専用 SELECT に変換する。使えないSQLなら None。"""
        try:
            raw = self._complete(
                build_preprocess_prompt(table_name, columns, self.dialect_label),
                [{"role": "user", "content": message}],
                max_tokens=self.config.repair_max_tokens,
                temperature=0,
            )
            return prepare_preprocess_select(raw, columns, self.dialect)
        except (LLMError, ReadOnlyViolation) as e:
            logger.warning("Discarding preprocessing query: %s", e)
            return None

    def _repair(self, raw: str) -> str | None:
        try:
            return self._complete(
                REPAIR_SYSTEM_PROMPT,
                [{"role": "user", "content": f"Convert this to valid JSON: {raw}"}],
                max_tokens=self.config.repair_max_tokens,
                temperature=0,
            )
        except LLMError as e:
            logger.warning("JSON repair call failed: %s", e.code)
            return None

    # ---- コンテキスト ----

    def _read(self, sql: str, owner_id: str) -> list[dict]:
        return self.store.execute_read(sql, owner_id=owner_id, timeout_seconds=self.config.sql_timeout_seconds)

    def _context(self, source: str, owner_id: str) -> tuple[object, list[dict]]:
        count_rows = self._read(f"SELECT COUNT(*) AS row_count FROM {source}", owner_id)
        sample = self._read(f"SELECT * FROM {source} LIMIT {int(self.config.sample_rows)}", owner_id)
        sample = [{k: v for k, v in row.items() if k != OWNER_COLUMN} for row in sample]
        row_count = next(iter(count_rows[0].values())) if count_rows else 0
        return row_count, sample

    # ---- 1ターン ----

    def run(
        self,
        *,
        message: str,
        table_name: str,
        file_name: str,
        file_description: str | None,
        history,
        owner_id: str,
    ) -> ChatTurnResult:
        # SCHEMA_LOOKUP
        columns = self.store.describe(table_name)
        column_types = {c["name"]: c["type"] for c in columns}
        data_columns = [c["name"] for c in columns if c["name"] not in ("id", "created_at")]

        # INTENT_CLASSIFY -> PREPROCESS_SQL_GEN
        intent = INTENT_QUERY
        subquery_sql = None
        if self.config.intent_classification:
            intent = self.classify_intent(message)
            if intent == INTENT_PREPROCESS:
                subquery_sql = self.generate_preprocess_sql(message, table_name, data_columns)

        # CONTEXT_BUILD
        prompt_columns = columns
        row_count, sample = "unknown", None
        if subquery_sql:
            try:
                row_count, sample = self._context(f"({subquery_sql}) AS {PREPROCESSED_ALIAS}", owner_id)
                names = list(sample[0].keys()) if sample else data_columns
                prompt_columns = [{"name": n, "type": column_types.get(n, "text")} for n in names]
            except SqlExecutionError as e:
                logger.warning("Preprocessing query failed, using the stored table: %s", e)
                subquery_sql = None
        if not subquery_sql:
            try:
                row_count, sample = self._context(table_name, owner_id)
            except SqlExecutionError as e:
                logger.warning("Could not load context for %s: %s", table_name, e)

        system_prompt = build_system_prompt(
            table_name=table_name,
            file_name=file_name,
            file_description=file_description,
            row_count=row_count,
            columns=prompt_columns,
            sample_rows=sample,
            dialect_label=self.dialect_label,
        )
        conversation = truncate_history(history, self.config.history_limit)
        conversation.append({"role": "user", "content": message})

        # LLM_GENERATE
        try:
            raw = self._complete(
                system_prompt,
                conversation,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except LLMError as e:
            logger.warning("Chat generation failed: %s (%s)", e.code, e)
            return ChatTurnResult(
                explanation="The assistant is temporarily unavailable. Please try again.",
                intent=intent,
                debug={"llmError": e.code},
            )

        # PARSE_JSON -> [LLM_REPAIR -> PARSE_JSON]
        raw = strip_code_fences(raw)
        logger.debug("Chat LLM response (sanitized): %s", raw)
        parsed = parse_model_response(raw)
        if parsed is None:
            logger.warning("JSON parse failed. Retrying with strict JSON format.")
            repaired = self._repair(raw)
            if repaired is not None:
                parsed = parse_model_response(strip_code_fences(repaired))
        if parsed is None:
            return ChatTurnResult(explanation=raw, raw_response=raw, intent=intent)

        turn = ChatTurnResult(
            explanation=parsed["explanation"],
            sql=parsed["sql"],
            raw_response=raw,
            intent=intent,
        )
        if subquery_sql:
            turn.debug["preprocessSql"] = subquery_sql
        if not turn.sql:
            return turn

        # SQL_PATCH
        turn.sql = patch_sql(
            turn.sql,
            column_types=column_types,
            columns=[c["name"] for c in prompt_columns if c["name"] not in ("id", "created_at")],
            table_name=table_name,
            subquery_sql=subquery_sql,
            dialect=self.dialect,
        )

        # SQL_EXECUTE
        logger.info("Executing SQL: %s", turn.sql)
        try:
            ensure_read_only(turn.sql, self.dialect)
            rows = self._read(turn.sql, owner_id)
        except (ReadOnlyViolation, SqlExecutionError) as e:
            logger.warning("SQL execution error: %s", e)
            turn.sql_error = str(e) or "SQL execution failed"
            return turn

        if not rows:
            turn.result = NO_ROWS
            return turn
        rows = [{k: v for k, v in row.items() if k != OWNER_COLUMN} for row in rows]
        turn.result = rows

        # RESULT_NORMALIZE（1行だけの結果はグラフにしない）
        chart_config = parsed["chartConfig"]
        if chart_config and len(rows) > 1:
            if chart_config.get("type") in CHART_TYPES:
                turn.chart_data = normalize_chart_data(rows, chart_config, max_rows=self.config.chart_max_rows)
            else:
                logger.info("Ignoring unsupported chart type: %s", chart_config.get("type"))

        return turn
