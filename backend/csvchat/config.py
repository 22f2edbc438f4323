"""
アプリ全体の設定（環境変数から読み込む）

LLM接続設定は llm.LLMConfig 側に置き、ここではチャット/前処理/認証/ストレージ等の
動作パラメータをまとめる。いずれも frozen dataclass + from_env() で生成する。
"""

import logging
import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ChatConfig:
    history_limit: int
    sample_rows: int
    chart_max_rows: int
    max_tokens: int
    temperature: float
    repair_max_tokens: int
    intent_classification: bool
    sql_timeout_seconds: float

    @staticmethod
    def from_env() -> "ChatConfig":
        return ChatConfig(
            history_limit=int(os.getenv("CHAT_HISTORY_LIMIT", "30")),
            sample_rows=int(os.getenv("CHAT_SAMPLE_ROWS", "5")),
            chart_max_rows=int(os.getenv("CHART_MAX_ROWS", "50")),
            max_tokens=int(os.getenv("CHAT_MAX_TOKENS", "400")),
            temperature=float(os.getenv("CHAT_TEMPERATURE", "0.2")),
            repair_max_tokens=int(os.getenv("CHAT_REPAIR_MAX_TOKENS", "300")),
            intent_classification=_env_bool("CHAT_INTENT_CLASSIFICATION", True),
            sql_timeout_seconds=float(os.getenv("SQL_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class PreprocessConfig:
    # 欠損率がこの値を「超える」列を低価値列とみなす（ちょうど30%は対象外）
    low_value_missing_ratio: float

    @staticmethod
    def from_env() -> "PreprocessConfig":
        return PreprocessConfig(
            low_value_missing_ratio=float(os.getenv("LOW_VALUE_MISSING_RATIO", "0.30")),
        )


@dataclass(frozen=True)
class AuthConfig:
    jwt_secret: str | None
    jwt_algorithm: str
    jwt_audience: str | None

    @staticmethod
    def from_env() -> "AuthConfig":
        return AuthConfig(
            jwt_secret=os.getenv("AUTH_JWT_SECRET"),
            jwt_algorithm=os.getenv("AUTH_JWT_ALGORITHM", "HS256").strip(),
            jwt_audience=os.getenv("AUTH_JWT_AUDIENCE") or None,
        )


@dataclass(frozen=True)
class StorageConfig:
    root_dir: str
    bucket: str

    @staticmethod
    def from_env() -> "StorageConfig":
        return StorageConfig(
            root_dir=os.getenv("STORAGE_DIR", "./data/storage"),
            bucket=os.getenv("STORAGE_BUCKET", "csv-files"),
        )


def configure_logging() -> None:
    """目的: LOG_LEVEL に従ってルートロガーを一度だけ設定する。"""
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
